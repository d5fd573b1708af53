from pathlib import Path

import orjson as json
import pytest
from mcp.types import ListToolsRequest

from phonepi import cli, log
from phonepi.remote import ErrorKind, RemoteCallError
from phonepi.service import host
from phonepi.service.relay import Relay

CATALOG_PATH = Path(cli.__file__).parent / 'catalog.yaml'


@pytest.fixture(autouse=True)
def logger():
    log.configure()


@pytest.fixture(scope='module')
def tools():
    return host.make_catalog(cli.load_yaml(CATALOG_PATH))


@pytest.fixture
async def relay():
    return Relay(call_timeout=0.1)


def test_catalog(tools):
    assert len(tools) == 22
    battery = tools['get_battery_level']
    assert battery.name == 'get_battery_level'
    assert battery.description == 'Get the current battery level of the phone'
    assert battery.inputSchema == {'type': 'object', 'properties': {}, 'required': []}
    assert tools['send_sms'].inputSchema['required'] == ['to', 'message']
    contact = tools['update_contact'].inputSchema['properties']['contact']
    added = tools['add_contact'].inputSchema['properties']['contact']
    assert set(contact['properties']) == set(added['properties']) | {'id'}
    assert contact['required'] == ['id', 'name']
    assert '<<' not in contact['properties']


def test_catalog_defaults():
    tools = host.make_catalog({'vibrate': None, 'beep': {'description': 'Beep'}})
    assert tools['vibrate'].description == ''
    assert tools['beep'].inputSchema == {'type': 'object', 'properties': {}}
    assert host.make_catalog(None) == {}


def test_render_text():
    [block] = host.render_result('get_contacts', [{'id': '1', 'name': 'Ada'}])
    assert block.type == 'text'
    assert json.loads(block.text) == [{'id': '1', 'name': 'Ada'}]
    [block] = host.render_result('copy_to_clipboard', 'copied')
    assert block.text == '"copied"'


def test_render_photo():
    photo = {'status': 'success', 'imageData': 'data:image/png;base64,iVBORw0KGgo='}
    image, summary = host.render_result('take_photo', photo)
    assert image.type == 'image'
    assert image.mimeType == 'image/png'
    assert image.data == 'iVBORw0KGgo='
    assert json.loads(summary.text) == {
        'status': 'success',
        'imageData': '[image/png image data]',
        'imageDataForAnalysis': 'data:image/png;base64,iVBORw0KGgo=',
    }
    assert photo['imageData'].startswith('data:')


def test_render_photo_string():
    photo = json.dumps({'imageData': 'data:image/jpeg;base64,/9j/'}).decode()
    image, _ = host.render_result('take_photo', photo)
    assert image.mimeType == 'image/jpeg'


def test_render_photo_truncated():
    data = 'A' * (host.PREVIEW_LENGTH + 5)
    _, summary = host.render_result('take_photo', {'imageData': f'data:image/jpeg;base64,{data}'})
    preview = json.loads(summary.text)['imageDataForAnalysis']
    assert preview == f"data:image/jpeg;base64,{'A' * host.PREVIEW_LENGTH}..."


def test_render_photo_fallback():
    results = [
        {'status': 'error', 'error': 'no camera'},
        {'imageData': 'data:text/plain;base64,AA=='},
        'not json',
        3,
    ]
    for result in results:
        [block] = host.render_result('take_photo', result)
        assert block.type == 'text'
    [block] = host.render_result('get_battery_level', {'imageData': 'data:image/png;base64,AA=='})
    assert block.type == 'text'


@pytest.mark.asyncio
async def test_invoke_tool(mocker, relay):
    invoke = mocker.patch.object(relay, 'invoke', mocker.AsyncMock(return_value={'level': 87}))
    [block] = await host.invoke_tool(relay, 'get_battery_level')
    invoke.assert_awaited_once_with('get_battery_level', {})
    assert json.loads(block.text) == {'level': 87}
    await host.invoke_tool(relay, 'send_sms', {'to': '555', 'message': 'hi'})
    invoke.assert_awaited_with('send_sms', {'to': '555', 'message': 'hi'})


@pytest.mark.asyncio
async def test_invoke_tool_no_peer(relay):
    with pytest.raises(RemoteCallError) as excinfo:
        await host.invoke_tool(relay, 'get_battery_level', {})
    assert excinfo.value.kind is ErrorKind.NO_PEER
    assert 'Phone not connected' in str(excinfo.value)


@pytest.mark.asyncio
async def test_list_tools(relay, tools):
    server = host.make_server(relay, tools)
    handler = server.request_handlers[ListToolsRequest]
    result = await handler(ListToolsRequest(method='tools/list'))
    assert [tool.name for tool in result.root.tools] == list(tools)
