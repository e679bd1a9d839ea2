import asyncio
import json

import pytest

from penguin_bank.datastore import InMemoryDataStore
from penguin_bank.dispatcher import (
    DEFAULT_PROTOCOL_VERSION,
    TIMEOUT_MESSAGE,
    ProtocolDispatcher,
    RequestContext,
    RpcMethod,
    contains_method,
    is_notification,
    parse_error,
)
from penguin_bank.logger import StructuredLogger
from penguin_bank.metrics import MetricsCollector
from penguin_bank.sessions import SessionRegistry
from penguin_bank.tools import BankingTools

USER_ID = "user-1"


def _request(method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    if request_id is not None:
        message["id"] = request_id
    return message


def _call_tool(name, arguments=None, request_id=1):
    return _request("tools/call", {"name": name, "arguments": arguments or {}}, request_id)


@pytest.mark.asyncio
async def test_initialize_creates_session_and_negotiates_version(dispatcher, sessions):
    context = RequestContext()
    response = await dispatcher.dispatch(
        _request("initialize", {"protocolVersion": "2025-03-26", "clientInfo": {"name": "claude"}}), context
    )

    result = response["result"]
    assert response["id"] == 1
    assert result["protocolVersion"] == "2025-03-26"
    assert result["serverInfo"]["name"] == "penguin-bank"
    assert result["capabilities"]["tools"] == {"listChanged": False}
    assert context.session_id in sessions
    session = await sessions.get(context.session_id)
    assert session.initialized is True
    assert session.client_info == {"name": "claude"}


@pytest.mark.asyncio
async def test_initialize_falls_back_to_newest_version(dispatcher):
    response = await dispatcher.dispatch(_request("initialize", {"protocolVersion": "1999-01-01"}), RequestContext())

    assert response["result"]["protocolVersion"] == DEFAULT_PROTOCOL_VERSION


@pytest.mark.asyncio
@pytest.mark.parametrize("request_id", [7, "abc-123", 0])
async def test_response_echoes_request_id(dispatcher, request_id):
    response = await dispatcher.dispatch(_request("ping", request_id=request_id), RequestContext())

    assert response == {"jsonrpc": "2.0", "id": request_id, "result": {}}


@pytest.mark.asyncio
async def test_tools_list_returns_catalog(dispatcher):
    response = await dispatcher.dispatch(_request("tools/list"), RequestContext())
    names = [tool["name"] for tool in response["result"]["tools"]]

    assert names == ["hello_penguin", "get_balance", "get_recent_transactions", "show_bill", "process_payment"]


@pytest.mark.asyncio
@pytest.mark.parametrize("method, key", [("resources/list", "resources"), ("prompts/list", "prompts")])
async def test_resource_and_prompt_lists_are_empty(dispatcher, method, key):
    response = await dispatcher.dispatch(_request(method), RequestContext())

    assert response["result"] == {key: []}


@pytest.mark.asyncio
async def test_unknown_method_returns_method_not_found(dispatcher):
    response = await dispatcher.dispatch(_request("tools/delete", request_id=3), RequestContext())

    assert response["id"] == 3
    assert response["error"]["code"] == -32601
    assert response["error"]["message"] == "Method not found: tools/delete"
    assert "result" not in response


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message",
    [
        {"method": "ping", "id": 1},
        {"jsonrpc": "1.0", "method": "ping", "id": 1},
        {"jsonrpc": "2.0", "id": 1},
        "ping",
    ],
)
async def test_malformed_requests_are_invalid(dispatcher, message):
    response = await dispatcher.dispatch(message, RequestContext())

    assert response["error"]["code"] == -32600


@pytest.mark.asyncio
async def test_notifications_produce_no_response(dispatcher, sessions):
    session = await sessions.get_or_create()
    context = RequestContext(session_id=session.id)

    assert await dispatcher.dispatch(_request("notifications/initialized", request_id=None), context) is None
    assert await dispatcher.dispatch(_request("ping", request_id=None), context) is None
    assert session.initialized is True


@pytest.mark.asyncio
async def test_notification_namespace_never_gets_a_response_even_with_id(dispatcher):
    assert await dispatcher.dispatch(_request("notifications/cancelled", request_id=5), RequestContext()) is None


@pytest.mark.asyncio
async def test_unknown_tool_is_internal_error(dispatcher):
    response = await dispatcher.dispatch(_call_tool("transfer_funds"), RequestContext())

    assert response["error"]["code"] == -32603
    assert response["error"]["message"] == "Unknown tool: transfer_funds"
    assert "get_balance" in response["error"]["data"]["available"]


@pytest.mark.asyncio
async def test_tool_call_wraps_result_and_records_metrics(dispatcher, metrics):
    context = RequestContext(request_id="req-42")
    response = await dispatcher.dispatch(_call_tool("get_balance"), context)

    content = response["result"]["content"]
    assert content[0]["type"] == "text"
    assert json.loads(content[0]["text"])["accounts"]
    record = metrics.get_tool_metric("get_balance", "req-42")
    assert record.success is True
    assert record.response_size > 0
    assert metrics.total_tool_executions == 1


@pytest.mark.asyncio
async def test_domain_error_is_a_successful_response(dispatcher, metrics):
    response = await dispatcher.dispatch(
        _call_tool("process_payment", {"payee": "Electric", "amount": 1, "account_type": "checking"}),
        RequestContext(),
    )

    assert "error" not in response
    assert response["result"]["isError"] is True
    assert response["result"]["content"][0]["text"].startswith("Error: Payment amount $1.00")
    assert metrics.get_error_counts() == {"tool_process_payment_error": 1}


@pytest.mark.asyncio
async def test_oversized_amount_is_a_domain_error_not_a_protocol_error(dispatcher, store):
    response = await dispatcher.dispatch(
        _call_tool("process_payment", {"payee": "Electric", "amount": 1e30, "account_type": "checking"}),
        RequestContext(),
    )

    assert "error" not in response
    assert response["result"]["isError"] is True
    assert response["result"]["content"][0]["text"] == "Error: amount is too large"
    assert store.writes == []


class _SlowStore(InMemoryDataStore):
    def __init__(self, *args, delay: float, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay
        self.finished = asyncio.Event()

    async def list_accounts(self, user_id, account_type=None):
        await asyncio.sleep(self.delay)
        accounts = await super().list_accounts(user_id, account_type)
        self.finished.set()
        return accounts


@pytest.mark.asyncio
async def test_tool_timeout_returns_fixed_message_and_abandons_task():
    store = _SlowStore(USER_ID, delay=0.2)
    dispatcher = ProtocolDispatcher(
        BankingTools(store, USER_ID),
        SessionRegistry(),
        MetricsCollector(),
        StructuredLogger("penguin_bank.tests"),
        tool_timeout=0.01,
    )

    response = await dispatcher.dispatch(_call_tool("get_balance", request_id=9), RequestContext())

    assert response["id"] == 9
    assert "error" not in response
    assert response["result"]["content"][0]["text"] == TIMEOUT_MESSAGE
    # The shielded tool keeps running after the caller gave up on it.
    await asyncio.wait_for(store.finished.wait(), timeout=2)


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_internal_error(dispatcher, tools):
    async def explode(arguments):
        raise RuntimeError("database on fire")

    definition = tools.get("hello_penguin")
    tools.definitions["hello_penguin"] = type(definition)(
        name=definition.name,
        description=definition.description,
        input_schema=definition.input_schema,
        handler=explode,
    )

    response = await dispatcher.dispatch(_call_tool("hello_penguin"), RequestContext())

    assert response["error"] == {"code": -32603, "message": "Internal error", "data": "database on fire"}


@pytest.mark.asyncio
async def test_batch_answers_requests_and_skips_notifications(dispatcher):
    responses = await dispatcher.handle(
        [
            _request("ping", request_id=1),
            _request("notifications/initialized", request_id=None),
            _request("tools/list", request_id=2),
            _request("nope", request_id=3),
        ],
        RequestContext(),
    )

    assert [response["id"] for response in responses] == [1, 2, 3]
    assert responses[2]["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_batch_of_only_notifications_returns_none(dispatcher):
    result = await dispatcher.handle([_request("notifications/initialized", request_id=None)], RequestContext())

    assert result is None


@pytest.mark.asyncio
async def test_empty_batch_is_a_single_invalid_request(dispatcher):
    response = await dispatcher.handle([], RequestContext())

    assert response["id"] is None
    assert response["error"]["code"] == -32600


def test_parse_error_envelope():
    assert parse_error("bad json") == {
        "jsonrpc": "2.0",
        "id": None,
        "error": {"code": -32700, "message": "Parse error", "data": "bad json"},
    }


def test_rpc_method_enum_is_closed():
    assert {method.value for method in RpcMethod} == {
        "initialize",
        "ping",
        "tools/list",
        "tools/call",
        "resources/list",
        "prompts/list",
    }
    with pytest.raises(ValueError):
        RpcMethod("tools/delete")


def test_message_helpers():
    assert is_notification({"jsonrpc": "2.0", "method": "ping"})
    assert is_notification({"jsonrpc": "2.0", "method": "notifications/initialized", "id": 1})
    assert not is_notification({"jsonrpc": "2.0", "method": "ping", "id": 1})
    assert contains_method([{"method": "ping"}, {"method": "initialize"}], "initialize")
    assert not contains_method({"method": "ping"}, "initialize")
