"""
Tests for the in-memory document store used in tests and single-process dev.
"""
import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from crm_sync.repositories.memory import InMemoryDatabase, apply_update, matches


class TestQueryMatching:
    """Tests for MongoDB-style query matching."""

    def test_equality_and_dotted_paths(self):
        """Dotted paths resolve into nested documents."""
        doc = {"name": "Ada", "address": {"city": "Austin"}}

        assert matches(doc, {"name": "Ada"})
        assert matches(doc, {"address.city": "Austin"})
        assert not matches(doc, {"address.city": "Boston"})

    def test_array_membership(self):
        """Equality against an array field matches any element."""
        doc = {"tags": ["vip", "lead"], "timeline": [{"id": "w1:created"}]}

        assert matches(doc, {"tags": "vip"})
        assert matches(doc, {"timeline.id": "w1:created"})
        assert not matches(doc, {"timeline.id": {"$ne": "w1:created"}})
        assert matches(doc, {"timeline.id": {"$ne": "w2:created"}})

    def test_ne_true_matches_missing_field(self):
        """$ne matches documents where the field is absent."""
        assert matches({"status": "open"}, {"deleted": {"$ne": True}})
        assert not matches({"deleted": True}, {"deleted": {"$ne": True}})

    def test_comparison_and_logical_operators(self):
        """$gt/$lte/$in/$or combine as in MongoDB."""
        doc = {"priority": 2, "status": "pending"}

        assert matches(doc, {"priority": {"$gt": 1, "$lte": 2}})
        assert matches(doc, {"status": {"$in": ["pending", "failed"]}})
        assert matches(doc, {"$or": [{"status": "failed"}, {"priority": 2}]})
        assert not matches(doc, {"priority": {"$exists": False}})


class TestUpdateOperators:
    """Tests for update operator application."""

    def test_set_on_insert_only_applies_on_insert(self):
        """$setOnInsert is ignored for existing documents."""
        doc = {"status": "paid"}

        apply_update(doc, {"$setOnInsert": {"status": "draft"}, "$set": {"amount": 10}}, is_insert=False)

        assert doc == {"status": "paid", "amount": 10}

    def test_inc_push_and_unset(self):
        """$inc, $push and $unset modify in place."""
        doc = {"count": 1, "items": [], "token": "x"}

        apply_update(doc, {"$inc": {"count": 2}, "$push": {"items": {"a": 1}}, "$unset": {"token": ""}}, is_insert=False)

        assert doc == {"count": 3, "items": [{"a": 1}]}

    def test_rejects_replacement_documents(self):
        """Updates without operators are refused."""
        with pytest.raises(ValueError):
            apply_update({}, {"status": "x"}, is_insert=False)


class TestInMemoryCollection:
    """Tests for collection operations."""

    @pytest.fixture
    def db(self):
        return InMemoryDatabase()

    async def test_upsert_seeds_document_from_query(self, db):
        """Upserts copy equality terms of the filter into the new document."""
        result = await db.contacts.update_one(
            {"ghl_contact_id": "c1", "location_id": "loc-1"},
            {"$set": {"first_name": "Ada"}, "$setOnInsert": {"tags": []}},
            upsert=True,
        )

        doc = await db.contacts.find_one({"ghl_contact_id": "c1"})
        assert result.upserted_id is not None
        assert doc["location_id"] == "loc-1"
        assert doc["tags"] == []

    async def test_unique_index_rejects_duplicates(self, db):
        """A unique index raises DuplicateKeyError like MongoDB."""
        await db.events.create_index("webhook_id", unique=True)
        await db.events.insert_one({"webhook_id": "w1"})

        with pytest.raises(DuplicateKeyError):
            await db.events.insert_one({"webhook_id": "w1"})

    async def test_find_one_and_update_honours_sort(self, db):
        """The first document in sort order is the one updated."""
        await db.queue.insert_many([
            {"name": "low", "priority": 5},
            {"name": "high", "priority": 1},
        ])

        doc = await db.queue.find_one_and_update(
            {},
            {"$set": {"claimed": True}},
            sort=[("priority", 1)],
            return_document=ReturnDocument.AFTER,
        )

        assert doc["name"] == "high"
        assert doc["claimed"] is True

    async def test_update_reports_no_modification_for_identical_write(self, db):
        """Re-applying the same $set leaves modified_count at 0."""
        await db.notes.insert_one({"ghl_note_id": "n1", "body": "hi"})

        result = await db.notes.update_one({"ghl_note_id": "n1"}, {"$set": {"body": "hi"}})

        assert result.matched_count == 1
        assert result.modified_count == 0

    async def test_cursor_sort_skip_limit(self, db):
        """Cursor chaining mirrors Motor."""
        await db.items.insert_many([{"n": i} for i in range(10)])

        docs = await db.items.find({}).sort([("n", -1)]).skip(2).limit(3).to_list(length=None)

        assert [d["n"] for d in docs] == [7, 6, 5]


class TestTransactions:
    """Tests for the undo-journal transaction."""

    async def test_rollback_restores_every_touched_document(self):
        """An exception inside the block undoes inserts, updates and deletes."""
        db = InMemoryDatabase()
        await db.invoices.insert_one({"ghl_invoice_id": "i1", "amount": 100})
        await db.projects.insert_one({"ghl_opportunity_id": "o1"})

        with pytest.raises(RuntimeError):
            async with db.transaction() as session:
                await db.invoices.update_one({"ghl_invoice_id": "i1"}, {"$set": {"amount": 999}}, session=session)
                await db.invoices.insert_one({"ghl_invoice_id": "i2"}, session=session)
                await db.projects.delete_one({"ghl_opportunity_id": "o1"}, session=session)
                raise RuntimeError("boom")

        assert (await db.invoices.find_one({"ghl_invoice_id": "i1"}))["amount"] == 100
        assert await db.invoices.find_one({"ghl_invoice_id": "i2"}) is None
        assert await db.projects.find_one({"ghl_opportunity_id": "o1"}) is not None

    async def test_commit_keeps_writes(self):
        """A block that completes keeps its writes."""
        db = InMemoryDatabase()

        async with db.transaction() as session:
            await db.notes.insert_one({"ghl_note_id": "n1"}, session=session)

        assert await db.notes.count_documents({}) == 1
