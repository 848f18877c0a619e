from datetime import datetime
from unittest import mock

import pytest
import requests

from chatapp.client import ChatApiClient, Conversation, Message
from chatapp.exceptions import BadRequest, InvalidState, NotFound, Unauthorized, UpstreamUnavailable


def _response(status_code, body=None, text=''):
    response = mock.Mock()
    response.status_code = status_code
    response.content = b'{}' if body is not None else text.encode()
    response.text = text
    if body is None:
        response.json.side_effect = ValueError('no json')
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def session():
    return mock.Mock()


@pytest.fixture
def api(session):
    return ChatApiClient(base_url='http://chat.local/', token='secret', session=session, timeout=3)


def test_requests_carry_bearer_token(api, session):
    session.request.return_value = _response(200, {'version': 7})
    assert api.current_version() == 7

    method, url = session.request.call_args.args
    assert (method, url) == ('GET', 'http://chat.local/api/cache-version')
    assert session.request.call_args.kwargs['headers']['Authorization'] == 'Bearer secret'
    assert session.request.call_args.kwargs['timeout'] == 3


@pytest.mark.parametrize('status, body, error', [
    (404, {'error': 'not_found', 'message': 'Conversation not found'}, NotFound),
    (400, {'error': 'invalid_state', 'message': 'Branching is only allowed from assistant messages'}, InvalidState),
    (400, {'error': 'bad_request', 'message': 'title must not be empty'}, BadRequest),
    (401, None, Unauthorized),
    (503, {'error': 'upstream_unavailable'}, UpstreamUnavailable),
    (500, None, UpstreamUnavailable),
])
def test_error_responses_map_to_exceptions(api, session, status, body, error):
    session.request.return_value = _response(status, body, text='boom')
    with pytest.raises(error):
        api.delete_conversation('c1')


def test_network_errors_are_upstream_unavailable(api, session):
    session.request.side_effect = requests.ConnectionError('refused')
    with pytest.raises(UpstreamUnavailable):
        api.current_version()


def test_no_content_returns_none(api, session):
    session.request.return_value = _response(204, text='')
    assert api.delete_conversation('c1') is None


def test_fetch_all_conversations_follows_cursor(api, session):
    page_one = {'conversations': [{'id': 'c2', 'title': 'Two', 'revision': 2}], 'hasMore': True,
                'nextCursor': '2025-03-01T12:00:00.000000Z'}
    page_two = {'conversations': [{'id': 'c1', 'title': 'One', 'revision': 1}], 'hasMore': False,
                'nextCursor': None}
    session.request.side_effect = [_response(200, page_one), _response(200, page_two)]

    conversations = api.fetch_all_conversations(archived=True)

    assert [c.id for c in conversations] == ['c2', 'c1']
    second_params = session.request.call_args_list[1].kwargs['params']
    assert second_params['cursor'] == '2025-03-01T12:00:00.000000Z'
    assert second_params['archived'] == 'true'
    assert second_params['full'] == 'true'


def test_create_message_posts_wire_format(api, session):
    message = Message(id='m1', conversation_id='c1', role='user', content='hi',
                      created_at=datetime(2025, 3, 1, 12, 0, 0))
    session.request.return_value = _response(201, message.to_wire())

    assert api.create_message(message) == message
    method, url = session.request.call_args.args
    assert (method, url) == ('POST', 'http://chat.local/api/conversations/c1/messages')
    assert session.request.call_args.kwargs['json']['createdAt'] == '2025-03-01T12:00:00.000000Z'


def test_update_conversation_sends_camel_case(api, session):
    session.request.return_value = _response(200, Conversation(id='c1', is_public=True).to_wire())
    updated = api.update_conversation('c1', {'is_public': True, 'model_id': 'gpt'})

    assert updated.is_public is True
    assert session.request.call_args.kwargs['json'] == {'isPublic': True, 'modelId': 'gpt'}
