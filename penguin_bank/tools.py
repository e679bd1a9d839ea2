"""Penguin Bank tool catalog and handlers.

Each handler validates its arguments, performs one or a few data store calls
and renders the outcome as a single MCP text content block. Business rule
violations raise ``BankingError`` which ``run`` turns into a readable
``isError`` result instead of a protocol error.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional

from .datastore import BankDataStore, DataStoreError, to_money

LOGGER = logging.getLogger("penguin_bank.tools")

ToolResult = Dict[str, Any]
ToolHandler = Callable[[Dict[str, Any]], Awaitable[ToolResult]]

ACCOUNT_TYPES = ("checking", "savings")
DEFAULT_ACCOUNT_TYPE = "checking"
DEFAULT_TRANSACTION_LIMIT = 10
MIN_TRANSACTION_LIMIT = 1
MAX_TRANSACTION_LIMIT = 50

WELCOME_MESSAGE = (
    "🐧 Welcome to Penguin Bank! I'm your AI banking assistant. I can help you:\n\n"
    "• Check account balances\n"
    "• View recent transactions\n"
    "• Show bill details\n"
    "• Process bill payments\n\n"
    "How can I help you today?"
)


class ToolName(str, Enum):
    HELLO_PENGUIN = "hello_penguin"
    GET_BALANCE = "get_balance"
    GET_RECENT_TRANSACTIONS = "get_recent_transactions"
    SHOW_BILL = "show_bill"
    PROCESS_PAYMENT = "process_payment"


class BankingError(Exception):
    """A business rule rejected the request. Reported to the user as text."""


@dataclass(frozen=True)
class ToolDefinition:
    """Metadata describing an MCP tool."""

    name: str
    description: str
    input_schema: Mapping[str, Any]
    handler: ToolHandler = field(compare=False, repr=False)

    @property
    def required_fields(self) -> FrozenSet[str]:
        return frozenset(self.input_schema.get("required", ()))

    def as_mcp_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": json.loads(json.dumps(self.input_schema)),
        }


def tool_ok(text: str) -> ToolResult:
    return {"content": [{"type": "text", "text": text}]}


def tool_error(message: str) -> ToolResult:
    return {"content": [{"type": "text", "text": f"Error: {message}"}], "isError": True}


def format_money(value: Any) -> str:
    return f"${to_money(value):,.2f}"


def _format_date(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value) if value is not None else None


def _render(payload: Dict[str, Any]) -> ToolResult:
    return tool_ok(json.dumps(payload, indent=2, ensure_ascii=False))


def new_confirmation_number() -> str:
    """``PB`` plus 12 hex characters of a UUID4. Unique in practice only."""

    return f"PB{uuid.uuid4().hex[:12].upper()}"


def _account_type(arguments: Dict[str, Any], *, required: bool = False) -> str:
    value = arguments.get("account_type")
    if value is None or value == "":
        if required:
            raise BankingError("Missing required argument: account_type")
        return DEFAULT_ACCOUNT_TYPE
    if not isinstance(value, str) or value.lower() not in ACCOUNT_TYPES:
        raise BankingError(f"Invalid account_type {value!r}. Expected one of: {', '.join(ACCOUNT_TYPES)}")
    return value.lower()


def _payee(arguments: Dict[str, Any]) -> str:
    value = arguments.get("payee")
    if not isinstance(value, str) or not value.strip():
        raise BankingError("Missing required argument: payee")
    return value.strip()


def _limit(arguments: Dict[str, Any]) -> int:
    value = arguments.get("limit")
    if value is None:
        return DEFAULT_TRANSACTION_LIMIT
    if isinstance(value, bool):
        raise BankingError("limit must be a number")
    if isinstance(value, float):
        if not value.is_integer():
            raise BankingError("limit must be a whole number")
        value = int(value)
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise BankingError("limit must be a number") from None
    return max(MIN_TRANSACTION_LIMIT, min(MAX_TRANSACTION_LIMIT, limit))


def _amount(arguments: Dict[str, Any]) -> Decimal:
    value = arguments.get("amount")
    if value is None or value == "":
        raise BankingError("Missing required argument: amount")
    if isinstance(value, bool):
        raise BankingError("amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise BankingError("amount must be a number") from None
    if not amount.is_finite() or amount <= 0:
        raise BankingError("amount must be greater than zero")
    try:
        cents = amount.quantize(Decimal("0.01"))
    except InvalidOperation:
        # More digits than the decimal context can hold.
        raise BankingError("amount is too large") from None
    if amount != cents:
        raise BankingError("amount must have at most two decimal places")
    return to_money(amount)


class BankingTools:
    """Tool handlers bound to a data store and the demo user."""

    def __init__(self, store: BankDataStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id
        self.definitions: Dict[str, ToolDefinition] = {
            definition.name: definition for definition in self._build_definitions()
        }

    def _build_definitions(self) -> List[ToolDefinition]:
        account_type_schema = {
            "type": "string",
            "enum": list(ACCOUNT_TYPES),
        }
        return [
            ToolDefinition(
                name=ToolName.HELLO_PENGUIN.value,
                description="Welcome message for Penguin Bank",
                input_schema={"type": "object", "properties": {}},
                handler=self.hello_penguin,
            ),
            ToolDefinition(
                name=ToolName.GET_BALANCE.value,
                description="Get account balances for checking and savings accounts",
                input_schema={
                    "type": "object",
                    "properties": {
                        "account_type": {
                            **account_type_schema,
                            "description": "Only return this account (default: all accounts)",
                        },
                    },
                },
                handler=self.get_balance,
            ),
            ToolDefinition(
                name=ToolName.GET_RECENT_TRANSACTIONS.value,
                description="Get recent transactions for an account",
                input_schema={
                    "type": "object",
                    "properties": {
                        "account_type": {
                            **account_type_schema,
                            "description": "Type of account to get transactions for (default: checking)",
                        },
                        "limit": {
                            "type": "integer",
                            "description": "Number of transactions to retrieve (default: 10)",
                            "minimum": MIN_TRANSACTION_LIMIT,
                            "maximum": MAX_TRANSACTION_LIMIT,
                        },
                    },
                },
                handler=self.get_recent_transactions,
            ),
            ToolDefinition(
                name=ToolName.SHOW_BILL.value,
                description="Display details for a specific bill",
                input_schema={
                    "type": "object",
                    "properties": {
                        "payee": {
                            "type": "string",
                            "description": "Name of the payee to show bill details for",
                        },
                    },
                    "required": ["payee"],
                },
                handler=self.show_bill,
            ),
            ToolDefinition(
                name=ToolName.PROCESS_PAYMENT.value,
                description="Process a bill payment",
                input_schema={
                    "type": "object",
                    "properties": {
                        "payee": {"type": "string", "description": "Name of the payee to pay"},
                        "amount": {"type": "number", "description": "Amount to pay", "minimum": 0.01},
                        "account_type": {**account_type_schema, "description": "Account to pay from"},
                    },
                    "required": ["payee", "amount", "account_type"],
                },
                handler=self.process_payment,
            ),
        ]

    def list_tools(self) -> List[Dict[str, Any]]:
        return [definition.as_mcp_dict() for definition in self.definitions.values()]

    def get(self, name: Any) -> Optional[ToolDefinition]:
        if not isinstance(name, str):
            return None
        return self.definitions.get(name)

    async def run(self, definition: ToolDefinition, arguments: Dict[str, Any]) -> ToolResult:
        try:
            return await definition.handler(arguments)
        except BankingError as exc:
            LOGGER.info("Tool %s rejected request: %s", definition.name, exc)
            return tool_error(str(exc))

    async def hello_penguin(self, arguments: Dict[str, Any]) -> ToolResult:
        return tool_ok(WELCOME_MESSAGE)

    async def get_balance(self, arguments: Dict[str, Any]) -> ToolResult:
        account_type = arguments.get("account_type")
        if account_type:
            account_type = _account_type(arguments)
        accounts = await self.store.list_accounts(self.user_id, account_type or None)
        if not accounts:
            if account_type:
                raise BankingError(f"No {account_type} account found")
            raise BankingError("No accounts found")
        return _render(
            {
                "accounts": [
                    {
                        "type": account["account_type"],
                        "account_number": account["account_number"],
                        "balance": format_money(account["balance"]),
                        "available_balance": format_money(account["available_balance"]),
                    }
                    for account in accounts
                ]
            }
        )

    async def get_recent_transactions(self, arguments: Dict[str, Any]) -> ToolResult:
        account_type = _account_type(arguments)
        limit = _limit(arguments)
        account = await self.store.get_account(self.user_id, account_type)
        if account is None:
            raise BankingError(f"No {account_type} account found")
        transactions = await self.store.list_transactions(account["id"], limit)
        return _render(
            {
                "account_type": account_type,
                "transactions": [
                    {
                        "date": _format_date(tx.get("created_at")),
                        "type": tx["transaction_type"],
                        "amount": format_money(tx["amount"]),
                        "merchant": tx.get("merchant") or "N/A",
                        "category": tx.get("category") or "other",
                        "description": tx.get("description"),
                        "balance_after": format_money(tx["balance_after"]) if tx.get("balance_after") is not None else None,
                    }
                    for tx in transactions
                ],
            }
        )

    async def _bills_for(self, payee: str) -> List[Dict[str, Any]]:
        bills = await self.store.find_bills(self.user_id, payee)
        if not bills:
            payees = await self.store.list_payees(self.user_id)
            suggestions = ", ".join(payees) or "none"
            raise BankingError(f'No bills found for "{payee}". Available payees: {suggestions}')
        return bills

    async def show_bill(self, arguments: Dict[str, Any]) -> ToolResult:
        payee = _payee(arguments)
        bills = await self._bills_for(payee)
        return _render(
            {
                "bills": [
                    {
                        "payee": bill["payee"],
                        "statement_balance": format_money(bill["statement_balance"]),
                        "minimum_payment": format_money(bill["minimum_payment"]),
                        "due_date": _format_date(bill.get("due_date")),
                        "category": bill.get("category"),
                        "account_number": bill.get("account_number") or "N/A",
                        "is_paid": bool(bill.get("is_paid")),
                        "is_autopay": bool(bill.get("is_autopay")),
                    }
                    for bill in bills
                ]
            }
        )

    async def process_payment(self, arguments: Dict[str, Any]) -> ToolResult:
        payee = _payee(arguments)
        amount = _amount(arguments)
        account_type = _account_type(arguments, required=True)

        account = await self.store.get_account(self.user_id, account_type)
        if account is None:
            raise BankingError(f"No {account_type} account found")
        balance = to_money(account["balance"])
        if balance < amount:
            raise BankingError(f"Insufficient funds. Available balance: {format_money(balance)}")

        bills = await self._bills_for(payee)
        if len(bills) > 1:
            names = ", ".join(bill["payee"] for bill in bills)
            raise BankingError(f'Payee "{payee}" matches several bills ({names}). Please be more specific.')
        bill = bills[0]
        statement_balance = to_money(bill["statement_balance"])
        minimum_payment = to_money(bill["minimum_payment"])
        if amount > statement_balance:
            raise BankingError(
                f"Payment amount {format_money(amount)} exceeds statement balance {format_money(statement_balance)}"
            )
        if amount < minimum_payment:
            raise BankingError(
                f"Payment amount {format_money(amount)} is less than minimum payment {format_money(minimum_payment)}"
            )

        confirmation_number = new_confirmation_number()
        new_balance = balance - amount
        completed = 0
        # Three independent writes; a failure after the first leaves earlier writes in place.
        try:
            await self.store.insert_payment(
                bill_id=bill["id"],
                account_id=account["id"],
                amount=amount,
                confirmation_number=confirmation_number,
            )
            completed += 1
            await self.store.update_account_balance(account["id"], new_balance)
            completed += 1
            await self.store.insert_transaction(
                account_id=account["id"],
                transaction_type="debit",
                amount=amount,
                merchant=bill["payee"],
                category="bill_payment",
                description=f"Bill payment to {bill['payee']}",
                balance_after=new_balance,
                reference_number=confirmation_number,
            )
            completed += 1
        except DataStoreError:
            LOGGER.error(
                "Payment %s failed after %d of 3 writes; earlier writes were not rolled back",
                confirmation_number,
                completed,
            )
            raise

        LOGGER.info("Processed payment %s to %s for %s", confirmation_number, bill["payee"], amount)
        return _render(
            {
                "success": True,
                "confirmation_number": confirmation_number,
                "amount_paid": format_money(amount),
                "payee": bill["payee"],
                "account_type": account_type,
                "new_balance": format_money(new_balance),
                "payment_date": datetime.now(timezone.utc).isoformat(),
            }
        )
