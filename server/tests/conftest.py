"""
Shared fixtures.

The order ledger is exercised against an in-process SQLite database behind
the same QueryExecutor interface the Postgres pool implements, and tokens
are minted with a throwaway RSA key served from a mocked JWKS endpoint.
"""

import asyncio
import json
import re
import sqlite3
import time
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from storefront.cache import MemoryCache
from storefront.db import QueryExecutor, Transaction, get_executor
from storefront.errors import ConflictError, InvalidReferenceError, StorageError
from storefront.identity import KeySetProvider, LocalAuthenticator, TokenVerifier


REGION = "eu-west-3"
POOL_ID = "eu-west-3_TestPool"
CLIENT_ID = "test-client-id"
ISSUER = f"https://cognito-idp.{REGION}.amazonaws.com/{POOL_ID}"
JWKS_URL = f"{ISSUER}/.well-known/jwks.json"
KID = "test-key-1"


SQLITE_SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    phone_number TEXT,
    birthdate TEXT,
    gender TEXT,
    address TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    price NUMERIC NOT NULL CHECK (price >= 0),
    quantity INTEGER NOT NULL DEFAULT 0,
    description TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users (id),
    user_name TEXT,
    user_location TEXT,
    order_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (order_status IN ('pending', 'confirmed', 'processing', 'shipped', 'delivered', 'cancelled')),
    total_price NUMERIC NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL REFERENCES orders (id) ON DELETE CASCADE,
    product_id INTEGER NOT NULL REFERENCES products (id),
    product_name TEXT,
    quantity INTEGER NOT NULL CHECK (quantity BETWEEN 1 AND 10000),
    unit_price NUMERIC NOT NULL CHECK (unit_price >= 0),
    total_price NUMERIC NOT NULL
);

CREATE TABLE product_images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER NOT NULL REFERENCES products (id) ON DELETE CASCADE,
    image_url TEXT NOT NULL,
    image_key TEXT NOT NULL,
    alt_text TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    is_primary BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE UNIQUE INDEX one_primary_image_per_product ON product_images (product_id) WHERE is_primary;
"""

SEED = """
INSERT INTO users (id, first_name, last_name, email) VALUES
    (1, 'Alice', 'Martin', 'alice@example.com'),
    (2, 'Bob', 'Durand', 'bob@example.com');

INSERT INTO products (id, name, price, quantity, description) VALUES
    (1, 'Notebook', 4.50, 100, 'A5 ruled'),
    (5, 'Desk Lamp', 15.99, 20, 'LED lamp'),
    (7, 'Mug', 9.01, 50, 'Ceramic mug'),
    (9, 'Poster', 10.00, 10, NULL);
"""


def _to_sqlite(sql: str, args):
    params = []
    for value in args:
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, datetime):
            value = value.isoformat(sep=" ")
        elif isinstance(value, date):
            value = value.isoformat()
        params.append(value)
    return re.sub(r"\$(\d+)", r"?\1", sql), params


class SqliteExecutor(QueryExecutor):
    """QueryExecutor over one SQLite connection, for tests."""

    supports_row_locks = False

    def __init__(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SQLITE_SCHEMA)
        self.conn.executescript(SEED)
        self.statements = []
        self.transactions = []
        self._failing = []

    def fail_when(self, fragment):
        """Make every later statement containing `fragment` fail as the driver would."""
        self._failing.append(fragment)

    def run(self, sql, args):
        sql, params = _to_sqlite(sql, args)
        self.statements.append(sql)
        if any(fragment in sql for fragment in self._failing):
            raise StorageError("connection lost", code="08006")
        try:
            return self.conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise InvalidReferenceError("The referenced record does not exist", code="23503") from e
            if "UNIQUE" in str(e):
                raise ConflictError("The record you're trying to create already exists", code="23505") from e
            raise StorageError(str(e), code="23000") from e
        except sqlite3.Error as e:
            raise StorageError(str(e), code=type(e).__name__) from e

    async def execute(self, sql, *args):
        return self.run(sql, args).rowcount

    async def fetch(self, sql, *args):
        return [dict(row) for row in self.run(sql, args).fetchall()]

    async def fetchrow(self, sql, *args):
        rows = self.run(sql, args).fetchall()
        return dict(rows[0]) if rows else None

    async def fetchval(self, sql, *args):
        rows = self.run(sql, args).fetchall()
        return rows[0][0] if rows else None

    async def begin(self):
        self.conn.execute("BEGIN")
        tx = SqliteTransaction(self)
        self.transactions.append(tx)
        return tx

    def count(self, table, where="1 = 1", *params):
        return self.conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0]

    def scalar(self, sql, *params):
        return self.conn.execute(sql, params).fetchone()[0]


class SqliteTransaction(Transaction):
    def __init__(self, executor: SqliteExecutor):
        self._executor = executor
        self.released = False

    async def execute(self, sql, *args):
        return await self._executor.execute(sql, *args)

    async def fetch(self, sql, *args):
        return await self._executor.fetch(sql, *args)

    async def fetchrow(self, sql, *args):
        return await self._executor.fetchrow(sql, *args)

    async def fetchval(self, sql, *args):
        return await self._executor.fetchval(sql, *args)

    async def commit(self):
        self._executor.conn.execute("COMMIT")

    async def rollback(self):
        self._executor.conn.execute("ROLLBACK")

    async def release(self):
        self.released = True


@pytest.fixture
def db():
    executor = SqliteExecutor()
    yield executor
    executor.conn.close()


@pytest.fixture
def run():
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run


# --- Tokens ---


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwk(rsa_key):
    data = json.loads(RSAAlgorithm.to_jwk(rsa_key.public_key()))
    data.update({"kid": KID, "alg": "RS256", "use": "sig"})
    return data


@pytest.fixture
def make_token(rsa_key):
    """Mint a signed token; keyword overrides replace or (with None) drop claims."""

    def _make(kid=KID, key=None, algorithm="RS256", **overrides):
        now = int(time.time())
        claims = {
            "sub": "user-sub-123",
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "token_use": "id",
            "exp": now + 3600,
            "iat": now,
            "email": "alice@example.com",
            "cognito:username": "alice",
            "cognito:groups": [],
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(claims, key or rsa_key, algorithm=algorithm, headers={"kid": kid})

    return _make


@pytest.fixture
def jwks_server(jwk):
    """Mocked JWKS endpoint; `calls` counts fetches."""

    class Server:
        calls = 0
        keys = [jwk]
        status = 200

        def handler(self, request: httpx.Request) -> httpx.Response:
            assert str(request.url) == JWKS_URL
            self.calls += 1
            return httpx.Response(self.status, json={"keys": self.keys})

    server = Server()
    server.transport = httpx.MockTransport(server.handler)
    return server


@pytest.fixture
def key_provider(jwks_server):
    return KeySetProvider(
        JWKS_URL,
        MemoryCache(max_entries=5),
        ttl=600,
        client=httpx.AsyncClient(transport=jwks_server.transport),
    )


@pytest.fixture
def authenticator(key_provider):
    return LocalAuthenticator(TokenVerifier(key_provider, issuer=ISSUER, audience=CLIENT_ID))


@pytest.fixture
def auth_header(make_token):
    """Authorization headers for a regular user and for an admin."""

    def _header(admin=False, **overrides):
        if admin:
            overrides.setdefault("cognito:groups", ["admin"])
            overrides.setdefault("email", "admin@example.com")
            overrides.setdefault("cognito:username", "admin")
        return {"Authorization": f"Bearer {make_token(**overrides)}"}

    return _header


# --- Application ---


@pytest.fixture
def client(db, authenticator):
    from storefront.main import app

    app.dependency_overrides[get_executor] = lambda: db
    app.state.authenticator = authenticator
    app.state.publisher = None
    yield TestClient(app)
    app.dependency_overrides.clear()
    del app.state.authenticator
    del app.state.publisher
