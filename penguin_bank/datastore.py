"""Data store collaborators for the banking tools.

Two implementations share one coroutine contract:

* ``PostgresDataStore`` talks to a Postgres-compatible database through
  ``psycopg2``. Every call opens its own connection and commits on its own,
  and runs in a worker thread so the event loop is never blocked.
* ``InMemoryDataStore`` keeps the same tables in dictionaries. It backs the
  ``memory`` backend used for demos and the test suite.

Neither offers multi-statement transactions to callers. A bill payment is
three separate writes and a failure part way through is not rolled back.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

LOGGER = logging.getLogger("penguin_bank.datastore")

CENTS = Decimal("0.01")

Record = Dict[str, Any]


class DataStoreError(RuntimeError):
    """Raised when the backing store rejects or fails a query."""


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENTS)


DEMO_ACCOUNTS: List[Record] = [
    {
        "account_type": "checking",
        "account_number": "PB-CHK-001",
        "balance": Decimal("2543.67"),
        "available_balance": Decimal("2543.67"),
    },
    {
        "account_type": "savings",
        "account_number": "PB-SAV-001",
        "balance": Decimal("15234.89"),
        "available_balance": Decimal("15234.89"),
    },
]

DEMO_BILLS: List[Record] = [
    {
        "payee": "Electric Company",
        "statement_balance": Decimal("142.50"),
        "minimum_payment": Decimal("35.00"),
        "due_in_days": 12,
        "is_paid": False,
        "is_autopay": False,
        "account_number": "EC-88214",
        "category": "utilities",
    },
    {
        "payee": "Internet Provider",
        "statement_balance": Decimal("89.99"),
        "minimum_payment": Decimal("89.99"),
        "due_in_days": 5,
        "is_paid": False,
        "is_autopay": True,
        "account_number": "NET-40021",
        "category": "utilities",
    },
    {
        "payee": "Credit Card",
        "statement_balance": Decimal("1250.00"),
        "minimum_payment": Decimal("25.00"),
        "due_in_days": 20,
        "is_paid": False,
        "is_autopay": False,
        "account_number": None,
        "category": "credit_card",
    },
]

# (account_type, transaction_type, amount, merchant, category, description)
DEMO_TRANSACTIONS = [
    ("checking", "debit", "54.23", "Fresh Market", "groceries", "Weekly groceries"),
    ("checking", "debit", "4.75", "Iceberg Coffee", "dining", "Morning coffee"),
    ("checking", "credit", "1850.00", "Penguin Corp", "income", "Payroll deposit"),
    ("checking", "debit", "62.10", "Glacier Gas", "transportation", "Fuel"),
    ("checking", "debit", "15.99", "StreamFlix", "entertainment", "Monthly subscription"),
    ("checking", "debit", "120.00", "Arctic Pharmacy", "health", "Prescription"),
    ("checking", "debit", "38.40", "Krill Kitchen", "dining", "Dinner"),
    ("checking", "debit", "9.99", "Cloud Storage", "software", "Storage plan"),
    ("checking", "debit", "72.15", "Fresh Market", "groceries", "Groceries"),
    ("checking", "debit", "25.00", "Floe Fitness", "health", "Gym membership"),
    ("checking", "debit", "18.50", "Snowy Books", "shopping", "Paperback"),
    ("checking", "credit", "40.00", "Emperor Pay", "transfer", "Shared dinner repayment"),
    ("savings", "credit", "500.00", "Penguin Bank", "transfer", "Transfer from checking"),
    ("savings", "credit", "12.68", "Penguin Bank", "interest", "Monthly interest"),
]


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id UUID PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        account_type VARCHAR(20) NOT NULL CHECK (account_type IN ('checking', 'savings')),
        account_number VARCHAR(32) NOT NULL,
        balance NUMERIC(12,2) NOT NULL DEFAULT 0,
        available_balance NUMERIC(12,2) NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (user_id, account_type)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES accounts(id),
        transaction_type VARCHAR(10) NOT NULL,
        amount NUMERIC(12,2) NOT NULL,
        merchant VARCHAR(255),
        category VARCHAR(100),
        description TEXT,
        balance_after NUMERIC(12,2),
        reference_number VARCHAR(64),
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bills (
        id UUID PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        payee VARCHAR(255) NOT NULL,
        statement_balance NUMERIC(12,2) NOT NULL,
        minimum_payment NUMERIC(12,2) NOT NULL,
        due_date DATE,
        is_paid BOOLEAN DEFAULT FALSE,
        is_autopay BOOLEAN DEFAULT FALSE,
        account_number VARCHAR(64),
        category VARCHAR(100)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_history (
        id UUID PRIMARY KEY,
        bill_id UUID NOT NULL REFERENCES bills(id),
        account_id UUID NOT NULL REFERENCES accounts(id),
        amount NUMERIC(12,2) NOT NULL,
        payment_type VARCHAR(20) NOT NULL,
        confirmation_number VARCHAR(32) NOT NULL,
        status VARCHAR(20) NOT NULL,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_transactions_account_created
    ON transactions(account_id, created_at DESC);
    """,
)


class BankDataStore:
    """Coroutine contract shared by the store implementations."""

    async def list_accounts(self, user_id: str, account_type: Optional[str] = None) -> List[Record]:
        raise NotImplementedError

    async def get_account(self, user_id: str, account_type: str) -> Optional[Record]:
        raise NotImplementedError

    async def list_transactions(self, account_id: str, limit: int) -> List[Record]:
        raise NotImplementedError

    async def find_bills(self, user_id: str, payee: str) -> List[Record]:
        """Bills whose payee contains ``payee``, case-insensitively."""

        raise NotImplementedError

    async def list_payees(self, user_id: str) -> List[str]:
        raise NotImplementedError

    async def insert_payment(
        self,
        *,
        bill_id: str,
        account_id: str,
        amount: Decimal,
        confirmation_number: str,
        payment_type: str = "one_time",
        status: str = "completed",
    ) -> Record:
        raise NotImplementedError

    async def update_account_balance(self, account_id: str, new_balance: Decimal) -> None:
        raise NotImplementedError

    async def insert_transaction(
        self,
        *,
        account_id: str,
        transaction_type: str,
        amount: Decimal,
        merchant: Optional[str],
        category: Optional[str],
        description: str,
        balance_after: Decimal,
        reference_number: Optional[str] = None,
    ) -> Record:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresDataStore(BankDataStore):
    """psycopg2-backed store. One connection per call, autocommitted per call."""

    def __init__(self, db_params: Dict[str, Any]) -> None:
        self.db_params = dict(db_params)

    def _connect(self):
        return psycopg2.connect(**self.db_params)

    def _run(self, sql: str, params: tuple = (), *, fetch: str = "all") -> Any:
        conn = self._connect()
        try:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute(sql, params)
                    if fetch == "all":
                        return [dict(row) for row in cursor.fetchall()]
                    if fetch == "one":
                        row = cursor.fetchone()
                        return dict(row) if row is not None else None
                    return cursor.rowcount
        finally:
            conn.close()

    async def _execute(self, sql: str, params: tuple = (), *, fetch: str = "all") -> Any:
        try:
            return await asyncio.to_thread(self._run, sql, params, fetch=fetch)
        except psycopg2.Error as exc:
            LOGGER.error("Database query failed: %s", exc)
            raise DataStoreError(str(exc).strip() or type(exc).__name__) from exc

    def _init_schema_sync(self) -> None:
        conn = self._connect()
        try:
            with conn:
                with conn.cursor() as cursor:
                    for statement in SCHEMA_STATEMENTS:
                        cursor.execute(statement)
            LOGGER.info("Database schema ensured")
        finally:
            conn.close()

    async def init_schema(self) -> None:
        try:
            await asyncio.to_thread(self._init_schema_sync)
        except psycopg2.Error as exc:
            raise DataStoreError(f"Schema initialisation failed: {exc}") from exc

    async def seed_demo_data(self, user_id: str) -> bool:
        """Insert demo accounts, bills and transactions if the user has none."""

        if await self.list_accounts(user_id):
            return False
        account_ids: Dict[str, str] = {}
        for account in DEMO_ACCOUNTS:
            account_id = str(uuid.uuid4())
            account_ids[account["account_type"]] = account_id
            await self._execute(
                """
                INSERT INTO accounts (id, user_id, account_type, account_number, balance, available_balance)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    account_id,
                    user_id,
                    account["account_type"],
                    account["account_number"],
                    account["balance"],
                    account["available_balance"],
                ),
                fetch="none",
            )
        today = date.today()
        for bill in DEMO_BILLS:
            await self._execute(
                """
                INSERT INTO bills (id, user_id, payee, statement_balance, minimum_payment, due_date,
                                   is_paid, is_autopay, account_number, category)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    bill["payee"],
                    bill["statement_balance"],
                    bill["minimum_payment"],
                    today + timedelta(days=bill["due_in_days"]),
                    bill["is_paid"],
                    bill["is_autopay"],
                    bill["account_number"],
                    bill["category"],
                ),
                fetch="none",
            )
        running = {account["account_type"]: account["balance"] for account in DEMO_ACCOUNTS}
        now = datetime.now(timezone.utc)
        for offset, (account_type, tx_type, amount, merchant, category, description) in enumerate(DEMO_TRANSACTIONS):
            await self._execute(
                """
                INSERT INTO transactions (id, account_id, transaction_type, amount, merchant, category,
                                          description, balance_after, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(uuid.uuid4()),
                    account_ids[account_type],
                    tx_type,
                    Decimal(amount),
                    merchant,
                    category,
                    description,
                    running[account_type],
                    now - timedelta(days=offset),
                ),
                fetch="none",
            )
        LOGGER.info("Seeded demo data for user %s", user_id)
        return True

    async def ping(self) -> bool:
        try:
            await self._execute("SELECT 1 AS ok", fetch="one")
        except DataStoreError:
            return False
        return True

    async def list_accounts(self, user_id: str, account_type: Optional[str] = None) -> List[Record]:
        sql = """
            SELECT id::text AS id, account_type, account_number, balance, available_balance
            FROM accounts
            WHERE user_id = %s
        """
        params: tuple = (user_id,)
        if account_type:
            sql += " AND account_type = %s"
            params += (account_type,)
        sql += " ORDER BY account_type"
        return await self._execute(sql, params)

    async def get_account(self, user_id: str, account_type: str) -> Optional[Record]:
        return await self._execute(
            """
            SELECT id::text AS id, account_type, account_number, balance, available_balance
            FROM accounts
            WHERE user_id = %s AND account_type = %s
            LIMIT 1
            """,
            (user_id, account_type),
            fetch="one",
        )

    async def list_transactions(self, account_id: str, limit: int) -> List[Record]:
        return await self._execute(
            """
            SELECT id::text AS id, transaction_type, amount, merchant, category, description,
                   balance_after, reference_number, created_at
            FROM transactions
            WHERE account_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (account_id, limit),
        )

    async def find_bills(self, user_id: str, payee: str) -> List[Record]:
        return await self._execute(
            """
            SELECT id::text AS id, payee, statement_balance, minimum_payment, due_date,
                   is_paid, is_autopay, account_number, category
            FROM bills
            WHERE user_id = %s AND payee ILIKE %s
            ORDER BY payee
            """,
            (user_id, f"%{_escape_like(payee)}%"),
        )

    async def list_payees(self, user_id: str) -> List[str]:
        rows = await self._execute(
            "SELECT payee FROM bills WHERE user_id = %s ORDER BY payee",
            (user_id,),
        )
        return [row["payee"] for row in rows]

    async def insert_payment(
        self,
        *,
        bill_id: str,
        account_id: str,
        amount: Decimal,
        confirmation_number: str,
        payment_type: str = "one_time",
        status: str = "completed",
    ) -> Record:
        return await self._execute(
            """
            INSERT INTO payment_history (id, bill_id, account_id, amount, payment_type,
                                         confirmation_number, status)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id::text AS id, bill_id::text AS bill_id, account_id::text AS account_id,
                      amount, payment_type, confirmation_number, status, created_at
            """,
            (str(uuid.uuid4()), bill_id, account_id, amount, payment_type, confirmation_number, status),
            fetch="one",
        )

    async def update_account_balance(self, account_id: str, new_balance: Decimal) -> None:
        updated = await self._execute(
            "UPDATE accounts SET balance = %s, available_balance = %s WHERE id = %s",
            (new_balance, new_balance, account_id),
            fetch="none",
        )
        if not updated:
            raise DataStoreError(f"Account {account_id} not found")

    async def insert_transaction(
        self,
        *,
        account_id: str,
        transaction_type: str,
        amount: Decimal,
        merchant: Optional[str],
        category: Optional[str],
        description: str,
        balance_after: Decimal,
        reference_number: Optional[str] = None,
    ) -> Record:
        return await self._execute(
            """
            INSERT INTO transactions (id, account_id, transaction_type, amount, merchant, category,
                                      description, balance_after, reference_number)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id::text AS id, transaction_type, amount, merchant, category, description,
                      balance_after, reference_number, created_at
            """,
            (
                str(uuid.uuid4()),
                account_id,
                transaction_type,
                amount,
                merchant,
                category,
                description,
                balance_after,
                reference_number,
            ),
            fetch="one",
        )


class InMemoryDataStore(BankDataStore):
    """Dictionary-backed store seeded with the demo user's data."""

    def __init__(self, user_id: Optional[str] = None, *, seed: bool = True) -> None:
        self.accounts: Dict[str, Record] = {}
        self.transactions: List[Record] = []
        self.bills: Dict[str, Record] = {}
        self.payments: List[Record] = []
        self.writes: List[tuple] = []
        if seed and user_id:
            self.seed_demo_data(user_id)

    def seed_demo_data(self, user_id: str) -> None:
        account_ids: Dict[str, str] = {}
        for account in DEMO_ACCOUNTS:
            record = self.add_account(user_id, **account)
            account_ids[record["account_type"]] = record["id"]
        today = date.today()
        for bill in DEMO_BILLS:
            fields = {key: value for key, value in bill.items() if key != "due_in_days"}
            self.add_bill(user_id, due_date=today + timedelta(days=bill["due_in_days"]), **fields)
        running = {account["account_type"]: account["balance"] for account in DEMO_ACCOUNTS}
        now = datetime.now(timezone.utc)
        for offset, (account_type, tx_type, amount, merchant, category, description) in enumerate(DEMO_TRANSACTIONS):
            self.transactions.append(
                {
                    "id": str(uuid.uuid4()),
                    "account_id": account_ids[account_type],
                    "transaction_type": tx_type,
                    "amount": to_money(amount),
                    "merchant": merchant,
                    "category": category,
                    "description": description,
                    "balance_after": running[account_type],
                    "reference_number": None,
                    "created_at": now - timedelta(days=offset),
                }
            )

    def add_account(
        self,
        user_id: str,
        *,
        account_type: str,
        account_number: str,
        balance: Any,
        available_balance: Any = None,
    ) -> Record:
        record = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "account_type": account_type,
            "account_number": account_number,
            "balance": to_money(balance),
            "available_balance": to_money(balance if available_balance is None else available_balance),
        }
        self.accounts[record["id"]] = record
        return record

    def add_bill(self, user_id: str, **fields: Any) -> Record:
        record = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "payee": fields["payee"],
            "statement_balance": to_money(fields["statement_balance"]),
            "minimum_payment": to_money(fields["minimum_payment"]),
            "due_date": fields.get("due_date"),
            "is_paid": fields.get("is_paid", False),
            "is_autopay": fields.get("is_autopay", False),
            "account_number": fields.get("account_number"),
            "category": fields.get("category"),
        }
        self.bills[record["id"]] = record
        return record

    @staticmethod
    def _public(record: Record) -> Record:
        result = copy.deepcopy(record)
        result.pop("user_id", None)
        return result

    async def list_accounts(self, user_id: str, account_type: Optional[str] = None) -> List[Record]:
        matches = [
            self._public(account)
            for account in self.accounts.values()
            if account["user_id"] == user_id and (account_type is None or account["account_type"] == account_type)
        ]
        return sorted(matches, key=lambda account: account["account_type"])

    async def get_account(self, user_id: str, account_type: str) -> Optional[Record]:
        accounts = await self.list_accounts(user_id, account_type)
        return accounts[0] if accounts else None

    async def list_transactions(self, account_id: str, limit: int) -> List[Record]:
        matches = [tx for tx in self.transactions if tx["account_id"] == account_id]
        matches.sort(key=lambda tx: tx["created_at"], reverse=True)
        return [copy.deepcopy(tx) for tx in matches[:limit]]

    async def find_bills(self, user_id: str, payee: str) -> List[Record]:
        needle = payee.lower()
        matches = [
            self._public(bill)
            for bill in self.bills.values()
            if bill["user_id"] == user_id and needle in bill["payee"].lower()
        ]
        return sorted(matches, key=lambda bill: bill["payee"])

    async def list_payees(self, user_id: str) -> List[str]:
        return sorted(bill["payee"] for bill in self.bills.values() if bill["user_id"] == user_id)

    async def insert_payment(
        self,
        *,
        bill_id: str,
        account_id: str,
        amount: Decimal,
        confirmation_number: str,
        payment_type: str = "one_time",
        status: str = "completed",
    ) -> Record:
        record = {
            "id": str(uuid.uuid4()),
            "bill_id": bill_id,
            "account_id": account_id,
            "amount": to_money(amount),
            "payment_type": payment_type,
            "confirmation_number": confirmation_number,
            "status": status,
            "created_at": datetime.now(timezone.utc),
        }
        self.payments.append(record)
        self.writes.append(("payment_history", record["id"]))
        return copy.deepcopy(record)

    async def update_account_balance(self, account_id: str, new_balance: Decimal) -> None:
        account = self.accounts.get(account_id)
        if account is None:
            raise DataStoreError(f"Account {account_id} not found")
        account["balance"] = to_money(new_balance)
        account["available_balance"] = to_money(new_balance)
        self.writes.append(("accounts", account_id))

    async def insert_transaction(
        self,
        *,
        account_id: str,
        transaction_type: str,
        amount: Decimal,
        merchant: Optional[str],
        category: Optional[str],
        description: str,
        balance_after: Decimal,
        reference_number: Optional[str] = None,
    ) -> Record:
        record = {
            "id": str(uuid.uuid4()),
            "account_id": account_id,
            "transaction_type": transaction_type,
            "amount": to_money(amount),
            "merchant": merchant,
            "category": category,
            "description": description,
            "balance_after": to_money(balance_after),
            "reference_number": reference_number,
            "created_at": datetime.now(timezone.utc),
        }
        self.transactions.append(record)
        self.writes.append(("transactions", record["id"]))
        return copy.deepcopy(record)


def create_datastore(settings: Any) -> BankDataStore:
    if settings.data_backend == "memory":
        LOGGER.info("Using in-memory data store")
        return InMemoryDataStore(settings.demo_user_id)
    LOGGER.info("Using Postgres data store")
    return PostgresDataStore(settings.db)
