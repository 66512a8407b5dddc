"""
Generic Repository Base Class
DRY foundation for async CRUD operations on MongoDB collections.
"""
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from ..utils.observability import logger

# Generic type for domain models
T = TypeVar("T", bound=BaseModel)


class BaseRepository(Generic[T]):
    """
    Generic async repository for MongoDB collections.
    Provides type-safe reads and inserts for domain models.

    Works against a Motor database or the in-memory stand-in; both expose
    the same collection API.

    Usage:
        class QueueRepository(BaseRepository[QueueItem]):
            def __init__(self, database):
                super().__init__(database, "webhook_queue", QueueItem)
    """

    def __init__(
        self,
        database: Any,
        collection_name: str,
        model_class: Type[T]
    ):
        """
        Initialize repository with database connection and model type.

        Args:
            database: Motor database instance (or InMemoryDatabase)
            collection_name: MongoDB collection name
            model_class: Pydantic model class for type safety
        """
        self.database = database
        self.collection = database[collection_name]
        self.model_class = model_class
        self.collection_name = collection_name

    async def insert(self, document: T, session: Any = None) -> str:
        """
        Insert a new document into the collection.

        Returns:
            String form of the inserted `_id`

        Raises:
            pymongo.errors.DuplicateKeyError: If unique constraint violated
        """
        doc_dict = self._to_document(document)
        result = await self.collection.insert_one(doc_dict, session=session)

        logger.debug(
            f"Created document in {self.collection_name}",
            extra={"document_id": str(result.inserted_id)}
        )
        return str(result.inserted_id)

    async def find_one(self, filter_dict: Dict[str, Any], session: Any = None) -> Optional[T]:
        """
        Retrieve the first document matching the filter.

        Returns:
            Domain model instance or None if not found
        """
        doc = await self.collection.find_one(filter_dict, session=session)

        if doc is None:
            return None

        return self._to_model(doc)

    async def find_many(
        self,
        filter_dict: Dict[str, Any],
        limit: int = 100,
        skip: int = 0,
        sort: Optional[List[tuple]] = None
    ) -> List[T]:
        """
        Retrieve multiple documents matching the filter.

        Args:
            filter_dict: MongoDB query filter
            limit: Maximum number of documents to return
            skip: Number of documents to skip (pagination)
            sort: List of (field, direction) tuples for sorting

        Returns:
            List of domain model instances
        """
        cursor = self.collection.find(filter_dict)

        if sort:
            cursor = cursor.sort(sort)

        cursor = cursor.skip(skip).limit(limit)
        docs = await cursor.to_list(length=limit)

        return [self._to_model(doc) for doc in docs]

    async def count(self, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        """Count documents matching the filter (all documents when None)."""
        filter_dict = filter_dict or {}
        return await self.collection.count_documents(filter_dict)

    def _to_document(self, document: T) -> Dict[str, Any]:
        doc_dict = document.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
        doc_dict.pop("_id", None)
        return doc_dict

    def _to_model(self, doc: Dict[str, Any]) -> T:
        """
        Convert MongoDB document to Pydantic model instance.

        Unknown fields are dropped so older documents with extra keys still load.
        """
        if "_id" in doc:
            doc["_id"] = str(doc["_id"])

        model_fields = self.model_class.model_fields.keys()

        cleaned_doc = {
            k: v for k, v in doc.items()
            if k in model_fields or k == "_id"
        }

        return self.model_class.model_validate(cleaned_doc)
