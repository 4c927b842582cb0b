"""End-to-end engagement scenarios: track events, read cached analytics."""

import pytest

pytestmark = pytest.mark.integration


def engagement(client, headers, **params):
  response = client.get('/api/analytics', params={'data_type': 'engagement', **params}, headers=headers)
  assert response.status_code == 200
  return response.json()


def track(client, **event):
  response = client.post('/api/analytics/events', json=event)
  assert response.status_code == 202
  return response.json()['event']


def test_new_event_invalidates_cached_engagement(integration_client, admin_headers, event_store):
  before = engagement(integration_client, admin_headers)
  assert event_store.calls['count_events'] == 1

  assert engagement(integration_client, admin_headers) == before
  assert event_store.calls['count_events'] == 1

  track(integration_client, type='POST_CREATE', entityType='post', entityId='p9', userId='u1')

  after = engagement(integration_client, admin_headers)
  assert event_store.calls['count_events'] == 2
  assert after['post_creates'] == before['post_creates'] + 1
  assert after['active_users'] == before['active_users'] + 1


def test_group_views_are_isolated(integration_client, admin_headers, event_store):
  engagement(integration_client, admin_headers, group_id='g1')
  engagement(integration_client, admin_headers, group_id='g2')
  assert event_store.calls['count_events'] == 2

  track(integration_client, type='GROUP_JOIN', entity_type='group', entity_id='g1', group_id='g1', user_id='u7')

  g1 = engagement(integration_client, admin_headers, group_id='g1')
  engagement(integration_client, admin_headers, group_id='g2')
  assert event_store.calls['count_events'] == 3
  assert g1['group_joins'] == 1


def test_top_content_follows_views(integration_client, admin_headers, event_store):
  event_store.add_post('p1', 'Welcome')
  event_store.add_post('p2', 'Rules')
  event_store.add_group('g1', 'General')

  for post_id in ('p1', 'p2', 'p2'):
    track(integration_client, type='POST_VIEW', entity_type='post', entity_id=post_id, group_id='g1')

  response = integration_client.get(
    '/api/analytics',
    params={'data_type': 'topContent', 'group_id': 'g1'},
    headers=admin_headers,
  )
  posts = response.json()['top_posts']
  assert [(post['id'], post['views']) for post in posts] == [('p2', 2), ('p1', 1)]

  track(integration_client, type='POST_VIEW', entity_type='post', entity_id='p1', group_id='g1')
  track(integration_client, type='POST_VIEW', entity_type='post', entity_id='p1', group_id='g1')

  response = integration_client.get(
    '/api/analytics',
    params={'data_type': 'topContent', 'group_id': 'g1'},
    headers=admin_headers,
  )
  assert response.json()['top_posts'][0]['id'] == 'p1'


def test_export_reflects_tracked_events(integration_client, admin_headers):
  track(integration_client, type='SEARCH', entity_type='search', user_id='u3', metadata={'query': 'appeals'})

  response = integration_client.get('/api/analytics/export', params={'period': 'day'}, headers=admin_headers)

  lines = response.text.splitlines()
  assert len(lines) == 2
  assert lines[1].startswith('SEARCH,search,,u3,,')
  assert '""query"": ""appeals""' in lines[1]
