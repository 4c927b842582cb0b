"""Admin authentication for FastAPI endpoints.

Admin routes are protected by a shared key sent in the X-Admin-Key header and
compared against ADMIN_API_KEY.
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from analytics_server.lib.structured_logger import StructuredLogger

logger = StructuredLogger(__name__)


async def require_admin_key(request: Request, x_admin_key: Optional[str] = Header(None)) -> None:
  """Reject requests that do not carry the admin key.

  Args:
      request: FastAPI request object
      x_admin_key: Value of the X-Admin-Key header

  Raises:
      HTTPException: 401 if the header is missing
      HTTPException: 403 if the key does not match
      HTTPException: 503 if no admin key is configured
  """
  expected = request.app.state.settings.admin_api_key
  if not expected:
    raise HTTPException(status_code=503, detail='Admin API unavailable: ADMIN_API_KEY not configured')

  if not x_admin_key:
    raise HTTPException(status_code=401, detail='Admin key required')

  if not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
    logger.warning('Rejected admin request with invalid key', endpoint=request.url.path)
    raise HTTPException(status_code=403, detail='Forbidden - Admin access required')
