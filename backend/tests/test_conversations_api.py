from datetime import datetime, timedelta

from chatapp.utils import cache_manager
from chatapp.utils.error_handler import ErrorHandler
from chatapp.utils.timestamps import to_iso

T0 = datetime(2025, 3, 1, 12, 0, 0)


def _create(client, headers, conversation_id, **fields):
    body = {'id': conversation_id, **fields}
    return client.post('/api/conversations', json=body, headers=headers)


def _add_message(client, headers, conversation_id, message_id, role='user', content='hello', created_at=None):
    body = {'id': message_id, 'role': role, 'content': content}
    if created_at is not None:
        body['createdAt'] = to_iso(created_at)
    return client.post(f'/api/conversations/{conversation_id}/messages', json=body, headers=headers)


def _version(app):
    with app.app_context():
        return cache_manager.get_cache_version()


def test_requires_authentication(client):
    response = client.get('/api/conversations')
    assert response.status_code == 401
    assert response.get_json()['error'] == 'unauthorized'


def test_create_is_idempotent(app, client, auth_headers):
    first = _create(client, auth_headers, 'c1', title='First title')
    version_after_create = _version(app)
    second = _create(client, auth_headers, 'c1', title='Different title')

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.get_json()['title'] == 'First title'
    assert _version(app) == version_after_create


def test_get_and_missing_conversation(client, auth_headers):
    _create(client, auth_headers, 'c1')
    assert client.get('/api/conversations/c1', headers=auth_headers).get_json()['id'] == 'c1'

    missing = client.get('/api/conversations/nope', headers=auth_headers)
    assert missing.status_code == 404
    assert missing.get_json()['error'] == 'not_found'


def test_update_bumps_revision_and_version(app, client, auth_headers):
    created = _create(client, auth_headers, 'c1').get_json()
    before = _version(app)

    updated = client.patch('/api/conversations/c1', json={'starred': True, 'title': 'Renamed'},
                           headers=auth_headers).get_json()

    assert updated['starred'] is True
    assert updated['title'] == 'Renamed'
    assert updated['revision'] > created['revision']
    assert _version(app) == before + 1


def test_field_level_updates_from_two_devices_merge(client, auth_headers):
    _create(client, auth_headers, 'c1')
    client.patch('/api/conversations/c1', json={'starred': True}, headers=auth_headers)
    client.patch('/api/conversations/c1', json={'title': 'From device B'}, headers=auth_headers)

    conversation = client.get('/api/conversations/c1', headers=auth_headers).get_json()
    assert conversation['starred'] is True
    assert conversation['title'] == 'From device B'


def test_pagination_with_cursor(client, auth_headers):
    for n in range(7):
        _create(client, auth_headers, f'c{n}', lastMessageAt=to_iso(T0 + timedelta(minutes=n)))

    first = client.get('/api/conversations?limit=3&full=true', headers=auth_headers).get_json()
    assert [c['id'] for c in first['conversations']] == ['c6', 'c5', 'c4']
    assert first['hasMore'] is True
    assert first['nextCursor'] == f"{to_iso(T0 + timedelta(minutes=4))}|c4"

    seen = [c['id'] for c in first['conversations']]
    cursor = first['nextCursor']
    while cursor:
        page = client.get('/api/conversations', query_string={'limit': 3, 'cursor': cursor},
                          headers=auth_headers).get_json()
        seen += [c['id'] for c in page['conversations']]
        cursor = page['nextCursor']
        if not page['hasMore']:
            assert cursor is None

    assert seen == [f'c{n}' for n in range(6, -1, -1)]


def test_title_projection_and_filters(client, auth_headers):
    _create(client, auth_headers, 'a', starred=True)
    _create(client, auth_headers, 'b', archived=True)
    _create(client, auth_headers, 'c')

    default = client.get('/api/conversations', headers=auth_headers).get_json()
    assert {c['id'] for c in default['conversations']} == {'a', 'c'}
    assert set(default['conversations'][0]) == {'id', 'title', 'lastMessageAt'}

    starred = client.get('/api/conversations?starred=true', headers=auth_headers).get_json()
    assert [c['id'] for c in starred['conversations']] == ['a']

    archived = client.get('/api/conversations?archived=true&full=true', headers=auth_headers).get_json()
    assert [c['id'] for c in archived['conversations']] == ['b']
    assert archived['conversations'][0]['archived'] is True


def test_since_revision_filter(client, auth_headers):
    first = _create(client, auth_headers, 'c1').get_json()
    _create(client, auth_headers, 'c2')

    page = client.get(f"/api/conversations?sinceRevision={first['revision']}", headers=auth_headers).get_json()
    assert [c['id'] for c in page['conversations']] == ['c2']
    assert page['latestRevision'] > first['revision']


def test_default_listing_is_cached_and_invalidated(client, auth_headers):
    _create(client, auth_headers, 'c1', title='Before')
    assert client.get('/api/conversations', headers=auth_headers).get_json()['conversations'][0]['title'] == 'Before'

    client.patch('/api/conversations/c1', json={'title': 'After'}, headers=auth_headers)
    assert client.get('/api/conversations', headers=auth_headers).get_json()['conversations'][0]['title'] == 'After'


def test_bad_query_parameters(client, auth_headers):
    assert client.get('/api/conversations?limit=abc', headers=auth_headers).status_code == 400
    assert client.get('/api/conversations?starred=maybe', headers=auth_headers).status_code == 400
    assert client.get('/api/conversations?cursor=not-a-date', headers=auth_headers).status_code == 400


def test_message_create_implicitly_creates_conversation(client, auth_headers):
    response = _add_message(client, auth_headers, 'implicit', 'm1', created_at=T0)
    assert response.status_code == 201

    conversation = client.get('/api/conversations/implicit', headers=auth_headers).get_json()
    assert conversation['lastMessageAt'] == to_iso(T0)

    # 随后到达的会话创建请求不会覆盖已有记录
    assert _create(client, auth_headers, 'implicit', title='Late').status_code == 200


def test_message_create_is_idempotent(app, client, auth_headers):
    _create(client, auth_headers, 'c1')
    assert _add_message(client, auth_headers, 'c1', 'm1').status_code == 201
    version = _version(app)
    assert _add_message(client, auth_headers, 'c1', 'm1', content='changed').status_code == 200
    assert _version(app) == version

    messages = client.get('/api/conversations/c1/messages', headers=auth_headers).get_json()['messages']
    assert [(m['id'], m['content']) for m in messages] == [('m1', 'hello')]


def test_message_validation(client, auth_headers):
    _create(client, auth_headers, 'c1')
    bad_role = client.post('/api/conversations/c1/messages', json={'id': 'm', 'role': 'robot', 'content': 'x'},
                           headers=auth_headers)
    assert bad_role.status_code == 400
    assert bad_role.get_json()['error'] == 'bad_request'


def test_meta_json_accepts_objects(client, auth_headers):
    _create(client, auth_headers, 'c1')
    client.post('/api/conversations/c1/messages',
                json={'id': 'm1', 'role': 'assistant', 'content': 'x', 'metaJson': {'tokens': 12}},
                headers=auth_headers)
    message = client.get('/api/conversations/c1/messages', headers=auth_headers).get_json()['messages'][0]
    assert message['metaJson'] == '{"tokens": 12}'


def test_last_message_at_never_moves_backwards(client, auth_headers):
    _create(client, auth_headers, 'c1')
    _add_message(client, auth_headers, 'c1', 'm2', created_at=T0 + timedelta(minutes=5))
    _add_message(client, auth_headers, 'c1', 'm1', created_at=T0)

    conversation = client.get('/api/conversations/c1', headers=auth_headers).get_json()
    assert conversation['lastMessageAt'] == to_iso(T0 + timedelta(minutes=5))


def test_message_pages_and_preview_cache(client, auth_headers):
    _create(client, auth_headers, 'c1')
    for n in range(7):
        _add_message(client, auth_headers, 'c1', f'm{n}', role='user' if n % 2 == 0 else 'assistant',
                     content=f'message {n}', created_at=T0 + timedelta(seconds=n))

    first = client.get('/api/conversations/c1/messages', headers=auth_headers).get_json()
    assert [m['id'] for m in first['messages']] == ['m0', 'm1', 'm2', 'm3', 'm4']
    assert first['hasMore'] is True

    rest = client.get('/api/conversations/c1/messages', query_string={'cursor': first['nextCursor']},
                      headers=auth_headers).get_json()
    assert [m['id'] for m in rest['messages']] == ['m5', 'm6']
    assert rest['hasMore'] is False

    preview = client.get('/api/conversations/c1/messages?preview=true', headers=auth_headers).get_json()
    assert preview['fromCache'] is True
    assert [m['id'] for m in preview['messages']] == ['m0', 'm1']


def test_delete_cascades_and_is_idempotent(client, auth_headers):
    _create(client, auth_headers, 'c1')
    _add_message(client, auth_headers, 'c1', 'm1')
    client.post('/api/projects', json={'id': 'p1', 'name': 'Work'}, headers=auth_headers)
    client.post('/api/projects/p1/conversations', json={'conversationId': 'c1'}, headers=auth_headers)

    assert client.delete('/api/conversations/c1', headers=auth_headers).status_code == 204
    assert client.delete('/api/conversations/c1', headers=auth_headers).status_code == 204

    assert client.get('/api/conversations/c1', headers=auth_headers).status_code == 404
    assert client.get('/api/conversations/c1/messages', headers=auth_headers).get_json()['messages'] == []
    assert client.get('/api/projects/p1/conversations', headers=auth_headers).get_json() == []


def test_public_share_view(client, auth_headers):
    _create(client, auth_headers, 'c1', title='Shared chat')
    _add_message(client, auth_headers, 'c1', 'm1', content='question', created_at=T0)
    _add_message(client, auth_headers, 'c1', 'm2', role='assistant', content='answer', created_at=T0 + timedelta(seconds=1))
    _add_message(client, auth_headers, 'c1', 'm3', role='system', content='internal', created_at=T0 + timedelta(seconds=2))

    assert client.get('/api/conversations/c1/share').status_code == 404

    client.patch('/api/conversations/c1', json={'isPublic': True}, headers=auth_headers)
    shared = client.get('/api/conversations/c1/share').get_json()
    assert shared['conversation']['title'] == 'Shared chat'
    assert [m['content'] for m in shared['messages']] == ['question', 'answer']


def test_errors_are_recorded(client, auth_headers):
    before = ErrorHandler.get_error_stats()['by_code'].get(404, 0)
    client.get('/api/conversations/ghost', headers=auth_headers)
    client.get('/api/no-such-route', headers=auth_headers)

    stats = ErrorHandler.get_error_stats()
    assert stats['by_code'][404] == before + 2
    assert stats['recent_errors'][-1]['path'] == '/api/no-such-route'


def test_pagination_keeps_rows_sharing_a_timestamp(client, auth_headers):
    for n in range(5):
        _create(client, auth_headers, f'c{n}', createdAt=to_iso(T0))

    seen = []
    cursor = None
    while True:
        query = {'limit': 2, 'full': 'true'}
        if cursor:
            query['cursor'] = cursor
        page = client.get('/api/conversations', query_string=query, headers=auth_headers).get_json()
        seen += [c['id'] for c in page['conversations']]
        cursor = page['nextCursor']
        if not page['hasMore']:
            break

    assert seen == ['c4', 'c3', 'c2', 'c1', 'c0']


def test_legacy_timestamp_cursor_is_still_accepted(client, auth_headers):
    for n in range(3):
        _create(client, auth_headers, f'c{n}', lastMessageAt=to_iso(T0 + timedelta(minutes=n)))

    page = client.get('/api/conversations', query_string={'cursor': to_iso(T0 + timedelta(minutes=1))},
                      headers=auth_headers).get_json()
    assert [c['id'] for c in page['conversations']] == ['c0']


def test_messages_with_same_timestamp_keep_insertion_order(client, auth_headers):
    _create(client, auth_headers, 'c1')
    _add_message(client, auth_headers, 'c1', 'zz-first', created_at=T0)
    _add_message(client, auth_headers, 'c1', 'aa-second', role='assistant', created_at=T0)

    messages = client.get('/api/conversations/c1/messages', headers=auth_headers).get_json()['messages']
    assert [m['id'] for m in messages] == ['zz-first', 'aa-second']


def test_message_pages_keep_messages_sharing_a_timestamp(client, auth_headers):
    _create(client, auth_headers, 'c1')
    ids = ['m6', 'm3', 'm0', 'm5', 'm1', 'm4', 'm2']
    for index, message_id in enumerate(ids):
        _add_message(client, auth_headers, 'c1', message_id, role='user' if index % 2 == 0 else 'assistant',
                     created_at=T0)

    first = client.get('/api/conversations/c1/messages', headers=auth_headers).get_json()
    assert first['hasMore'] is True
    rest = client.get('/api/conversations/c1/messages', query_string={'cursor': first['nextCursor']},
                      headers=auth_headers).get_json()

    assert [m['id'] for m in first['messages'] + rest['messages']] == ids
    assert rest['hasMore'] is False


def test_preview_cursor_continues_after_cached_pair(client, auth_headers):
    _create(client, auth_headers, 'c1')
    for n in range(7):
        _add_message(client, auth_headers, 'c1', f'm{n}', role='user' if n % 2 == 0 else 'assistant',
                     created_at=T0)
    client.get('/api/conversations/c1/messages', headers=auth_headers)

    preview = client.get('/api/conversations/c1/messages?preview=true', headers=auth_headers).get_json()
    assert preview['fromCache'] is True
    rest = client.get('/api/conversations/c1/messages', query_string={'cursor': preview['nextCursor']},
                      headers=auth_headers).get_json()
    assert [m['id'] for m in rest['messages']] == ['m2', 'm3', 'm4', 'm5', 'm6']


def test_client_fetches_every_tied_row(client, auth_headers, api_client):
    for n in range(4):
        _create(client, auth_headers, f'c{n}', createdAt=to_iso(T0))
    _create(client, auth_headers, 'chat')
    for n in range(7):
        _add_message(client, auth_headers, 'chat', f'm{n}', created_at=T0)

    conversations = api_client.fetch_all_conversations(archived=False, page_size=2)
    assert sorted(c.id for c in conversations) == ['c0', 'c1', 'c2', 'c3', 'chat']

    messages = api_client.fetch_messages('chat')
    assert [m.id for m in messages] == [f'm{n}' for n in range(7)]


def test_invalid_token_gets_uniform_401_body(client):
    garbage = {'Authorization': 'Bearer garbage'}
    for method, path in (('GET', '/api/conversations'), ('POST', '/api/generate-title'),
                         ('GET', '/api/projects'), ('GET', '/api/cache-version')):
        response = client.open(path, method=method, headers=garbage)
        assert response.status_code == 401
        assert response.get_json()['error'] == 'unauthorized'
