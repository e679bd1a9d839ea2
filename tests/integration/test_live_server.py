"""
End-to-end MCP conversation against a real socket.
Boots the server with the in-memory backend; no mocks.
"""

import json
import uuid

import pytest
import requests

pytestmark = pytest.mark.integration

HEADERS = {"Content-Type": "application/json", "Accept": "application/json, text/event-stream"}


class TestLiveServer:
    """Drive the server the way an MCP client does."""

    @pytest.fixture(scope="class")
    def mcp_url(self, live_server_url: str) -> str:
        return f"{live_server_url}/mcp"

    @pytest.fixture(scope="class")
    def session_id(self, mcp_url: str) -> str:
        response = requests.post(
            mcp_url,
            json={
                "jsonrpc": "2.0",
                "id": "init",
                "method": "initialize",
                "params": {
                    "protocolVersion": "2025-06-18",
                    "clientInfo": {"name": "integration-tests", "version": "1.0"},
                    "capabilities": {},
                },
            },
            headers=HEADERS,
            timeout=10,
        )
        assert response.status_code == 200, response.text
        assert response.json()["result"]["serverInfo"]["name"] == "penguin-bank"
        session_id = response.headers["Mcp-Session-Id"]

        initialized = requests.post(
            mcp_url,
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers={**HEADERS, "Mcp-Session-Id": session_id},
            timeout=10,
        )
        assert initialized.status_code == 202
        return session_id

    def _call(self, mcp_url: str, session_id: str, name: str, arguments=None) -> dict:
        response = requests.post(
            mcp_url,
            json={
                "jsonrpc": "2.0",
                "id": str(uuid.uuid4()),
                "method": "tools/call",
                "params": {"name": name, "arguments": arguments or {}},
            },
            headers={**HEADERS, "Mcp-Session-Id": session_id},
            timeout=30,
        )
        assert response.status_code == 200, response.text
        assert response.headers["Mcp-Session-Id"] == session_id
        return response.json()["result"]

    def test_health(self, live_server_url: str):
        response = requests.get(f"{live_server_url}/health", timeout=5)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["metrics"]["total_requests"] >= 1

    def test_tools_list(self, mcp_url: str, session_id: str):
        response = requests.post(
            mcp_url,
            json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
            headers={**HEADERS, "Mcp-Session-Id": session_id},
            timeout=10,
        )
        names = [tool["name"] for tool in response.json()["result"]["tools"]]

        assert "process_payment" in names
        assert len(names) == len(set(names))

    def test_payment_flow(self, mcp_url: str, session_id: str):
        balance_before = json.loads(
            self._call(mcp_url, session_id, "get_balance", {"account_type": "checking"})["content"][0]["text"]
        )["accounts"][0]["balance"]

        bill = json.loads(self._call(mcp_url, session_id, "show_bill", {"payee": "Credit Card"})["content"][0]["text"])
        assert bill["bills"][0]["minimum_payment"] == "$25.00"

        payment = self._call(
            mcp_url,
            session_id,
            "process_payment",
            {"payee": "Credit Card", "amount": 25, "account_type": "checking"},
        )
        receipt = json.loads(payment["content"][0]["text"])
        assert receipt["success"] is True
        assert receipt["new_balance"] != balance_before

        transactions = json.loads(
            self._call(mcp_url, session_id, "get_recent_transactions", {"limit": 1})["content"][0]["text"]
        )
        assert transactions["transactions"][0]["merchant"] == "Credit Card"

    def test_domain_error_is_reported_as_tool_error(self, mcp_url: str, session_id: str):
        result = self._call(mcp_url, session_id, "show_bill", {"payee": "Water Utility"})

        assert result["isError"] is True
        assert result["content"][0]["text"].startswith("Error: No bills found")

    def test_preflight_from_claude(self, mcp_url: str):
        response = requests.options(mcp_url, headers={"Origin": "https://claude.ai"}, timeout=5)

        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Origin"] == "https://claude.ai"
        assert response.headers["Access-Control-Allow-Credentials"] == "true"

    def test_sse_handshake(self, mcp_url: str):
        response = requests.get(mcp_url, headers={"Accept": "text/event-stream"}, timeout=5)

        assert response.status_code == 200
        assert response.text.startswith("data: ")
        assert "notifications/initialized" in response.text
