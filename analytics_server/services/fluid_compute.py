"""Concurrency-limited, cached execution of async functions.

`fluid_compute` wraps an async function so that:

- results are cached in the key-value store under `<prefix>:<serialized args>`
- cache hits return immediately without taking a concurrency permit
- at most `concurrency` misses run the function at once; the rest queue FIFO
- optionally, concurrent misses for the same key share one computation

`run_post_response_task` schedules work to run after a response has been sent
and records its progress in the store.
"""

import asyncio
import functools
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from analytics_server.lib.cache import KeyValueStore
from analytics_server.lib.metrics import record_cache_lookup, update_permit_gauges

logger = logging.getLogger(__name__)

WARMUP_REFRESH_SECONDS = 60
WARMUP_EXPIRY_SECONDS = 120
BACKGROUND_STATUS_TTL_SECONDS = 3600
PENDING_INDEX_KEY = 'background:pending'

# Strong references to scheduled tasks so they are not garbage collected mid-run
_background_tasks: Set[asyncio.Task] = set()


class Semaphore:
  """Counting semaphore with strict FIFO hand-off.

  A release wakes exactly one waiter and passes the permit to it directly, so
  the active count never drops and a newly arriving caller cannot overtake
  a queued one.
  """

  def __init__(self, max_concurrency: int):
    if max_concurrency < 1:
      raise ValueError('max_concurrency must be at least 1')
    self.max_concurrency = max_concurrency
    self.active_count = 0
    self._waiters: Deque[asyncio.Future] = deque()

  @property
  def waiting(self) -> int:
    return sum(1 for waiter in self._waiters if not waiter.done())

  async def acquire(self) -> None:
    if self.active_count < self.max_concurrency and not self.waiting:
      self.active_count += 1
      return

    waiter = asyncio.get_running_loop().create_future()
    self._waiters.append(waiter)
    try:
      await waiter
    except asyncio.CancelledError:
      if waiter.done() and not waiter.cancelled():
        # Permit was handed over before the cancellation landed
        self.release()
      raise
    finally:
      if waiter in self._waiters:
        self._waiters.remove(waiter)

  def release(self) -> None:
    while self._waiters:
      waiter = self._waiters.popleft()
      if not waiter.done():
        waiter.set_result(True)
        return

    if self.active_count <= 0:
      raise ValueError('Semaphore released too many times')
    self.active_count -= 1

  async def __aenter__(self) -> 'Semaphore':
    await self.acquire()
    return self

  async def __aexit__(self, exc_type, exc, tb) -> None:
    self.release()


@dataclass
class FluidComputeOptions:
  """Options for a wrapped function.

  Attributes:
    key_prefix: Namespace for the cache keys of this function
    concurrency: Maximum concurrent executions on cache misses
    cache_ttl_seconds: Validity of cached results; 0 or None disables caching
    keep_warm: Maintain a `<prefix>:warmup` heartbeat key
    background_timeout_seconds: Timeout for post-response tasks of this function
    single_flight: Share one in-flight computation between concurrent misses
  """

  key_prefix: str
  concurrency: int = 5
  cache_ttl_seconds: Optional[int] = 3600
  keep_warm: bool = False
  background_timeout_seconds: float = 60
  single_flight: bool = False


def stable_serialize(args: Any) -> str:
  """Serialize arguments deterministically (sorted keys, no whitespace)."""
  return json.dumps(args, sort_keys=True, separators=(',', ':'), default=str)


def _spawn(coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
  task = asyncio.get_running_loop().create_task(coro, name=name)
  _background_tasks.add(task)
  task.add_done_callback(_background_tasks.discard)
  return task


async def drain_background_tasks() -> None:
  """Wait for every scheduled keep-warm and post-response task to finish."""
  while _background_tasks:
    await asyncio.gather(*list(_background_tasks), return_exceptions=True)


async def _keep_warm(options: FluidComputeOptions, store: KeyValueStore, clock: Callable[[], float]) -> None:
  key = f'{options.key_prefix}:warmup'
  try:
    last_warmup = await store.get(key)
    now = clock()
    if last_warmup is None or now - float(last_warmup) > WARMUP_REFRESH_SECONDS:
      await store.set(key, now, ttl_seconds=WARMUP_EXPIRY_SECONDS)
      logger.info(f'Keeping function warm: {options.key_prefix}', extra={'key_prefix': options.key_prefix})
  except Exception as e:
    logger.warning(f'Keep-warm failed for {options.key_prefix}: {e}', extra={'key_prefix': options.key_prefix})


def fluid_compute(
  fn: Callable[..., Awaitable[Any]],
  options: FluidComputeOptions,
  store: Optional[KeyValueStore] = None,
  clock: Callable[[], float] = time.time
):
  """Wrap an async function with caching and a concurrency limit.

  Args:
    fn: Async function whose positional arguments are JSON-serializable
    options: Prefix, concurrency, TTL and warm-up settings
    store: Key-value store for cached results; no caching when None
    clock: Wall clock in epoch seconds

  Returns:
    An async callable with the same signature as `fn`, exposing
    `.semaphore`, `.options` and `.cache_key(*args)`

  Example:
    get_summary = fluid_compute(load_summary, FluidComputeOptions('moderation-summary', concurrency=2), store)
    summary = await get_summary('group-1')
  """
  semaphore = Semaphore(options.concurrency)
  in_flight: Dict[str, asyncio.Task] = {}
  caching = store is not None and bool(options.cache_ttl_seconds)
  warmup = {'scheduled': False}

  def cache_key(*args: Any) -> str:
    return f'{options.key_prefix}:{stable_serialize(list(args))}'

  def schedule_warmup() -> None:
    if warmup['scheduled'] or not options.keep_warm or store is None:
      return
    warmup['scheduled'] = True
    _spawn(_keep_warm(options, store, clock), name=f'{options.key_prefix}:warmup')

  async def read_cache(key: str) -> Any:
    try:
      entry = await store.get(key)
    except Exception as e:
      logger.warning(f'Cache read failed for {key}: {e}', extra={'cache_key': key})
      return None

    if isinstance(entry, dict) and entry.get('data') is not None:
      if clock() - float(entry.get('timestamp', 0)) < options.cache_ttl_seconds:
        return entry['data']
    return None

  async def compute(key: str, args: tuple) -> Any:
    try:
      async with semaphore:
        update_permit_gauges(options.key_prefix, semaphore.active_count, semaphore.waiting)
        data = await fn(*args)
        if caching:
          try:
            await store.set(
              key,
              {'data': data, 'cached': True, 'timestamp': clock()},
              ttl_seconds=options.cache_ttl_seconds
            )
          except Exception as e:
            logger.warning(f'Cache write failed for {key}: {e}', extra={'cache_key': key})
        return data
    finally:
      update_permit_gauges(options.key_prefix, semaphore.active_count, semaphore.waiting)

  @functools.wraps(fn)
  async def wrapped(*args: Any) -> Any:
    schedule_warmup()
    key = cache_key(*args)

    if caching:
      cached = await read_cache(key)
      record_cache_lookup(options.key_prefix, cached is not None)
      if cached is not None:
        return cached

    if not options.single_flight:
      return await compute(key, args)

    task = in_flight.get(key)
    if task is None:
      task = asyncio.get_running_loop().create_task(compute(key, args))
      in_flight[key] = task
      task.add_done_callback(lambda _: in_flight.pop(key, None))
    # Shielded so a cancelled caller does not cancel the shared computation
    return await asyncio.shield(task)

  wrapped.semaphore = semaphore
  wrapped.options = options
  wrapped.cache_key = cache_key

  try:
    asyncio.get_running_loop()
  except RuntimeError:
    pass  # scheduled on the first call instead
  else:
    schedule_warmup()

  return wrapped


async def _run_tracked(
  task: Callable[[], Awaitable[Any]],
  task_key: str,
  store: KeyValueStore,
  timeout_seconds: float,
  clock: Callable[[], float]
) -> None:
  async def set_status(status: Dict[str, Any]) -> None:
    try:
      await store.set(task_key, status, ttl_seconds=BACKGROUND_STATUS_TTL_SECONDS)
    except Exception as e:
      logger.warning(f'Could not update background task status {task_key}: {e}')

  await set_status({'status': 'in-progress', 'started_at': clock()})
  try:
    await asyncio.wait_for(task(), timeout=timeout_seconds)
  except Exception as e:
    message = f'Timed out after {timeout_seconds}s' if isinstance(e, asyncio.TimeoutError) else str(e)
    logger.error(f'Background task {task_key} failed: {message}')
    await set_status({'status': 'failed', 'error': message, 'failed_at': clock()})
  else:
    await set_status({'status': 'completed', 'completed_at': clock()})
  finally:
    try:
      await store.zrem(PENDING_INDEX_KEY, task_key)
    except Exception as e:
      logger.warning(f'Could not remove {task_key} from pending index: {e}')


async def run_post_response_task(
  task: Callable[[], Awaitable[Any]],
  key: str,
  store: Optional[KeyValueStore] = None,
  timeout_seconds: float = 60,
  clock: Callable[[], float] = time.time
) -> Optional[str]:
  """Run work after the response, tracking its status in the store.

  Args:
    task: Zero-argument coroutine function
    key: Name used in the status key `background:<key>:<ms>`
    store: Key-value store for status tracking; the task runs inline when None
      or when the store rejects the registration writes
    timeout_seconds: Upper bound on the task's runtime
    clock: Wall clock in epoch seconds

  Returns:
    The status key, or None when the task ran inline
  """
  if store is not None:
    now = clock()
    task_key = f'background:{key}:{int(now * 1000)}'
    try:
      await store.set(task_key, {'status': 'pending', 'created_at': now}, ttl_seconds=BACKGROUND_STATUS_TTL_SECONDS)
      await store.zadd(PENDING_INDEX_KEY, {task_key: now})
    except Exception as e:
      logger.warning(f'Could not register background task {task_key}, running inline: {e}')
    else:
      _spawn(_run_tracked(task, task_key, store, timeout_seconds, clock), name=task_key)
      return task_key

  try:
    await asyncio.wait_for(task(), timeout=timeout_seconds)
  except Exception as e:
    logger.error(f'Background task {key} failed: {e}')
  return None


async def list_pending_background_tasks(store: KeyValueStore) -> List[str]:
  """Status keys of tasks that have not finished yet, oldest first."""
  return await store.zrange(PENDING_INDEX_KEY, 0, -1)
