import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from dotenv import load_dotenv

from bookhive import config
from bookhive.main import app, get_db
from bookhive.storage import ensure_indexes

load_dotenv()

TEST_MONGODB_URL = os.getenv(
    "TEST_MONGODB_URL", os.getenv("MONGODB_URL", "mongodb://localhost:27017")
)

COLLECTION_COROUTINES = (
    "insert_one",
    "find_one",
    "find_one_and_update",
    "update_one",
    "delete_one",
    "delete_many",
    "count_documents",
)


def make_collection():
    collection = MagicMock()
    for name in COLLECTION_COROUTINES:
        setattr(collection, name, AsyncMock())
    return collection


@pytest.fixture(autouse=True)
def no_transactions(monkeypatch):
    monkeypatch.setattr(config, "MONGODB_USE_TRANSACTIONS", False)


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.books = make_collection()
    db.borrows = make_collection()
    return db


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def book_doc(now):
    def factory(**overrides):
        doc = {
            "_id": ObjectId(),
            "title": "Dune",
            "author": "Frank Herbert",
            "genre": "SCIENCE_FICTION",
            "isbn": "9780441172719",
            "description": "Desert planet politics",
            "copies": 3,
            "available": True,
            "created_at": now,
            "updated_at": now,
        }
        doc.update(overrides)
        return doc

    return factory


@pytest.fixture
def borrow_doc(now):
    def factory(book_id=None, **overrides):
        doc = {
            "_id": ObjectId(),
            "book": book_id or ObjectId(),
            "quantity": 1,
            "due_date": now + timedelta(days=14),
            "created_at": now,
            "updated_at": now,
        }
        doc.update(overrides)
        return doc

    return factory


@pytest.fixture
def client(mock_db):
    app.state.testing = True
    app.dependency_overrides[get_db] = lambda: mock_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


# live MongoDB fixtures


@pytest.fixture
async def mongo_client():
    client = AsyncIOMotorClient(
        TEST_MONGODB_URL, tz_aware=True, serverSelectionTimeoutMS=1000
    )
    try:
        await client.admin.command("ping")
    except PyMongoError:
        client.close()
        pytest.skip("MongoDB server not available")

    yield client

    client.close()


@pytest.fixture
async def test_db(mongo_client):
    db_name = f"bookhive_test_{uuid4().hex[:8]}"
    db = mongo_client[db_name]
    await ensure_indexes(db)
    yield db
    # Clean up the test database after each test function
    await mongo_client.drop_database(db_name)
