"""
Unit tests for the in-memory storage driver.

Tests cover:
- Connection lifecycle
- Query operators and dotted paths
- Projection, sort, skip, limit
- Update operators and replacement
- Isolation of stored documents
- Duplicate _id and unique index enforcement
"""

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from sdk.docodm.drivers.base import StorageDriver
from sdk.docodm.drivers.memory import MemoryDriver, match_query, project
from sdk.docodm.errors import BadQueryError, ConnectionError


class TestMatchQuery:
    """Tests for match_query()."""

    DOC = {"name": "Bob", "age": 42, "tags": ["a", "b"], "address": {"city": "Lisbon"}}

    def test_equality_and_dotted(self):
        assert match_query(self.DOC, {"name": "Bob", "address.city": "Lisbon"})
        assert not match_query(self.DOC, {"address.city": "Porto"})

    def test_array_containment(self):
        assert match_query(self.DOC, {"tags": "a"})
        assert not match_query(self.DOC, {"tags": "z"})

    def test_comparisons(self):
        assert match_query(self.DOC, {"age": {"$gt": 40, "$lte": 42}})
        assert not match_query(self.DOC, {"age": {"$lt": 42}})
        assert not match_query(self.DOC, {"missing": {"$gt": 1}})

    def test_in_nin_ne(self):
        assert match_query(self.DOC, {"age": {"$in": [1, 42]}})
        assert match_query(self.DOC, {"age": {"$nin": [1, 2]}})
        assert match_query(self.DOC, {"name": {"$ne": "Alice"}})

    def test_exists(self):
        assert match_query(self.DOC, {"age": {"$exists": True}})
        assert match_query(self.DOC, {"missing": {"$exists": False}})

    def test_logical(self):
        assert match_query(self.DOC, {"$or": [{"name": "Alice"}, {"age": 42}]})
        assert not match_query(self.DOC, {"$and": [{"name": "Bob"}, {"age": 1}]})

    def test_unsupported_operator(self):
        with pytest.raises(BadQueryError, match="Unsupported operator"):
            match_query(self.DOC, {"name": {"$regex": "B"}})

    def test_projection(self):
        assert project(self.DOC, {"name": 1}) == {"name": "Bob"}
        assert "tags" not in project(self.DOC, {"tags": 0})


class TestMemoryDriver:
    """Tests for MemoryDriver."""

    @pytest.fixture
    async def driver(self):
        driver = MemoryDriver()
        await driver.connect()
        yield driver
        await driver.close()

    @pytest.fixture
    async def users(self, driver):
        return await driver.collection("users")

    def test_satisfies_protocol(self):
        assert isinstance(MemoryDriver(), StorageDriver)

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        driver = MemoryDriver()
        with pytest.raises(ConnectionError):
            await driver.collection("users")

    @pytest.mark.asyncio
    async def test_save_assigns_id(self, driver, users):
        document = {"name": "Bob"}
        _id = await driver.save(users, document)

        assert isinstance(_id, ObjectId)
        assert "_id" not in document
        assert await driver.find_one(users, {"_id": _id}) == {"_id": _id, "name": "Bob"}

    @pytest.mark.asyncio
    async def test_save_replaces(self, driver, users):
        _id = await driver.save(users, {"name": "Bob"})
        await driver.save(users, {"_id": _id, "name": "Robert"})

        assert await driver.count(users, {}) == 1
        assert (await driver.find_one(users, {"_id": _id}))["name"] == "Robert"

    @pytest.mark.asyncio
    async def test_results_are_copies(self, driver, users):
        _id = await driver.save(users, {"name": "Bob", "tags": ["a"]})
        found = await driver.find_one(users, {"_id": _id})
        found["tags"].append("b")

        assert (await driver.find_one(users, {"_id": _id}))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_find_sort_skip_limit(self, driver, users):
        await driver.insert(users, [{"n": 3}, {"n": 1}, {"n": 2}, {"n": 4}])

        docs = await driver.find(users, {}, {"n": 1, "_id": 0}, {"sort": {"n": -1}, "skip": 1, "limit": 2})

        assert docs == [{"n": 3}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_find_in_ids(self, driver, users):
        ids = await driver.insert(users, [{"n": 1}, {"n": 2}, {"n": 3}])

        docs = await driver.find(users, {"_id": {"$in": [ids[2], ids[0]]}})

        assert sorted(doc["n"] for doc in docs) == [1, 3]

    @pytest.mark.asyncio
    async def test_update_operators(self, driver, users):
        _id = await driver.save(users, {"name": "Bob", "age": 1, "tags": ["a"]})

        matched = await driver.update(
            users,
            {"_id": _id},
            {
                "$set": {"address.city": "Lisbon"},
                "$inc": {"age": 2},
                "$push": {"tags": "b"},
                "$addToSet": {"roles": "admin"},
            },
        )

        assert matched == 1
        assert await driver.find_one(users, {"_id": _id}) == {
            "_id": _id,
            "name": "Bob",
            "age": 3,
            "tags": ["a", "b"],
            "roles": ["admin"],
            "address": {"city": "Lisbon"},
        }

    @pytest.mark.asyncio
    async def test_update_pull_unset(self, driver, users):
        _id = await driver.save(users, {"name": "Bob", "tags": ["a", "b", "a"]})

        await driver.update(users, {"_id": _id}, {"$pull": {"tags": "a"}, "$unset": {"name": 1}})

        assert await driver.find_one(users, {"_id": _id}) == {"_id": _id, "tags": ["b"]}

    @pytest.mark.asyncio
    async def test_update_replacement_keeps_id(self, driver, users):
        _id = await driver.save(users, {"name": "Bob", "age": 1})

        await driver.update(users, {"_id": _id}, {"name": "Alice"})

        assert await driver.find_one(users, {"_id": _id}) == {"_id": _id, "name": "Alice"}

    @pytest.mark.asyncio
    async def test_update_multi(self, driver, users):
        await driver.insert(users, [{"group": 1}, {"group": 1}, {"group": 2}])

        assert await driver.update(users, {"group": 1}, {"$set": {"seen": True}}) == 1
        assert await driver.update(users, {"group": 1}, {"$set": {"seen": True}}, {"multi": True}) == 2

    @pytest.mark.asyncio
    async def test_update_rejects_mixed_document(self, driver, users):
        with pytest.raises(BadQueryError):
            await driver.update(users, {}, {"$set": {"a": 1}, "b": 2})

    @pytest.mark.asyncio
    async def test_remove(self, driver, users):
        await driver.insert(users, [{"n": 1}, {"n": 2}, {"n": 2}])

        assert await driver.remove(users, {"n": 2}) == 2
        assert await driver.count(users, {}) == 1

    @pytest.mark.asyncio
    async def test_ensure_index(self, driver, users):
        name = await driver.ensure_index(users, {"email": 1}, {"unique": True})

        assert name == "email_1"
        assert users.indexes["email_1"] == {"key": {"email": 1}, "unique": True}

    @pytest.mark.asyncio
    async def test_insert_duplicate_id(self, driver, users):
        _id = await driver.save(users, {"name": "Bob"})

        with pytest.raises(DuplicateKeyError, match="_id_") as exc_info:
            await driver.insert(users, [{"name": "Ann"}, {"_id": _id, "name": "Robert"}])

        assert exc_info.value.code == 11000
        assert await driver.find(users, {}, {"_id": 0}) == [{"name": "Bob"}]

    @pytest.mark.asyncio
    async def test_insert_duplicate_id_within_batch(self, driver, users):
        _id = ObjectId()

        with pytest.raises(DuplicateKeyError):
            await driver.insert(users, [{"_id": _id}, {"_id": _id}])

        assert await driver.count(users, {}) == 0

    @pytest.mark.asyncio
    async def test_unique_index_on_insert_and_save(self, driver, users):
        await driver.ensure_index(users, {"email": 1}, {"unique": True})
        _id = await driver.save(users, {"email": "bob@example.com"})

        with pytest.raises(DuplicateKeyError, match="email_1"):
            await driver.insert(users, [{"email": "bob@example.com"}])
        with pytest.raises(DuplicateKeyError):
            await driver.save(users, {"email": "bob@example.com"})

        await driver.save(users, {"_id": _id, "email": "bob@example.com", "name": "Bob"})
        assert await driver.count(users, {}) == 1

    @pytest.mark.asyncio
    async def test_unique_index_missing_values_collide(self, driver, users):
        await driver.ensure_index(users, {"email": 1}, {"unique": True})
        await driver.insert(users, [{"name": "Bob"}])

        with pytest.raises(DuplicateKeyError):
            await driver.insert(users, [{"name": "Ann"}])

    @pytest.mark.asyncio
    async def test_unique_index_on_update(self, driver, users):
        await driver.ensure_index(users, {"email": 1}, {"unique": True})
        ids = await driver.insert(users, [{"email": "a@example.com"}, {"email": "b@example.com"}])

        with pytest.raises(DuplicateKeyError):
            await driver.update(users, {"_id": ids[1]}, {"$set": {"email": "a@example.com"}})
        with pytest.raises(DuplicateKeyError):
            await driver.update(users, {}, {"$set": {"email": "c@example.com"}}, {"multi": True})
        with pytest.raises(DuplicateKeyError):
            await driver.update(users, {"name": "Zed"}, {"$set": {"email": "a@example.com"}}, {"upsert": True})

        docs = await driver.find(users, {}, {"_id": 0})
        assert docs == [{"email": "a@example.com"}, {"email": "b@example.com"}]

    @pytest.mark.asyncio
    async def test_unique_index_over_existing_duplicates(self, driver, users):
        await driver.insert(users, [{"email": "a@example.com"}, {"email": "a@example.com"}])

        with pytest.raises(DuplicateKeyError):
            await driver.ensure_index(users, {"email": 1}, {"unique": True})

        assert users.indexes == {}
        assert await driver.ensure_index(users, {"email": 1}) == "email_1"

    @pytest.mark.asyncio
    async def test_calls_recorded(self, driver, users):
        await driver.count(users, {})
        assert driver.calls == ["collection", "count"]
