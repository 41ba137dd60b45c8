"""
Data Access Object for MongoDB operations.

The deployment target is Cosmos DB through its MongoDB API, so every container
is a plain collection keyed by a string ``id`` with an optional partition field.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, IndexModel, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.config import get_settings
from shared.errors import ConflictError, UpstreamError
from shared.schemas import Meeting, utc_now

logger = logging.getLogger(__name__)
settings = get_settings()

CONTAINERS = (
    "meetings",
    "schedules",
    "chats",
    "summaries",
    "attendance",
    "notifications",
    "reminders",
    "dead_letters",
)

# Partition field per container, mirrors the Cosmos partition keys.
PARTITION_KEYS = {
    "meetings": "user_id",
    "chats": "meeting_id",
    "summaries": "meeting_id",
    "notifications": "meeting_id",
    "reminders": "meeting_id",
}

SortSpec = Sequence[Tuple[str, int]]


class MongoDBDAO:
    """MongoDB Data Access Object."""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None
        self.collections: Dict[str, Any] = {}
        self.initialized = False

    async def initialize(self):
        """Initialize MongoDB client and collections."""
        try:
            self.client = AsyncIOMotorClient(
                settings.mongodb_url,
                tz_aware=True,
                serverSelectionTimeoutMS=15000,
                connectTimeoutMS=15000,
                socketTimeoutMS=30000,
            )
            self.db = self.client[settings.mongodb_database]

            # Test connection
            await self.client.admin.command('ping')

            self.collections = {
                name: self.db[settings.collection_name(name)] for name in CONTAINERS
            }

            await self._create_indexes()

            self.initialized = True
            logger.info(f"✅ MongoDB DAO initialized successfully (Database: {settings.mongodb_database})")

        except Exception as e:
            logger.error(f"❌ Failed to initialize MongoDB DAO: {e}", exc_info=True)
            raise

    async def close(self):
        if self.client:
            self.client.close()
            self.client = None
        self.initialized = False

    async def _create_indexes(self):
        """Create indexes for collections."""
        try:
            await self.collections["meetings"].create_indexes([
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel([("user_id", ASCENDING), ("start_time", DESCENDING)]),
                IndexModel([("graph_event_id", ASCENDING)]),
                IndexModel([("status", ASCENDING)]),
            ])

            await self.collections["schedules"].create_indexes([
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel([("status", ASCENDING), ("scheduled_join_time", ASCENDING)]),
                IndexModel([("meeting_id", ASCENDING)]),
            ])

            # Source message ids are only unique within a meeting chat
            await self.collections["chats"].create_indexes([
                IndexModel([("meeting_id", ASCENDING), ("id", ASCENDING)], unique=True),
                IndexModel([("meeting_id", ASCENDING), ("timestamp", ASCENDING)]),
            ])

            await self.collections["summaries"].create_indexes([
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel([("meeting_id", ASCENDING), ("generated_at", DESCENDING)]),
            ])

            await self.collections["attendance"].create_indexes([
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel([("status", ASCENDING)]),
            ])

            for name in ("notifications", "reminders", "dead_letters"):
                await self.collections[name].create_indexes([
                    IndexModel([("id", ASCENDING)], unique=True),
                    IndexModel([("meeting_id", ASCENDING)]),
                    IndexModel([("created_at", DESCENDING)]),
                ])

            logger.info("✅ MongoDB indexes created successfully")
        except Exception as e:
            logger.warning(f"⚠️  Failed to create some indexes: {e}")

    def _collection(self, container: str):
        if container not in self.collections:
            raise ValueError(f"Unknown container: {container}")
        return self.collections[container]

    def _key(self, container: str, item_id: str, partition_key: Optional[str]) -> Dict[str, Any]:
        key: Dict[str, Any] = {"id": item_id}
        partition_field = PARTITION_KEYS.get(container)
        if partition_key is not None and partition_field:
            key[partition_field] = partition_key
        return key

    @staticmethod
    def _clean(doc: Optional[dict]) -> Optional[dict]:
        if doc is None:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return doc

    # Generic container operations

    async def create_item(self, container: str, item: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new document; raises ConflictError when the id exists."""
        try:
            doc = dict(item)
            await self._collection(container).insert_one(doc)
            logger.debug(f"Created {container} item {item.get('id')}")
            return self._clean(doc)
        except DuplicateKeyError:
            raise ConflictError(f"{container} item {item.get('id')} already exists")
        except PyMongoError as e:
            logger.error(f"Failed to create {container} item: {e}")
            raise UpstreamError(f"Database error: {e}")

    async def upsert_item(self, container: str, item: Dict[str, Any]) -> Dict[str, Any]:
        try:
            doc = dict(item)
            await self._collection(container).replace_one({"id": doc["id"]}, doc, upsert=True)
            return self._clean(doc)
        except PyMongoError as e:
            logger.error(f"Failed to upsert {container} item {item.get('id')}: {e}")
            raise UpstreamError(f"Database error: {e}")

    async def get_item(
        self, container: str, item_id: str, partition_key: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        try:
            doc = await self._collection(container).find_one(self._key(container, item_id, partition_key))
            return self._clean(doc)
        except PyMongoError as e:
            logger.error(f"Failed to get {container} item {item_id}: {e}")
            raise UpstreamError(f"Database error: {e}")

    async def update_item(
        self,
        container: str,
        item_id: str,
        updates: Dict[str, Any],
        partition_key: Optional[str] = None,
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Merge ``updates`` into the document and stamp ``updated_at``.

        With ``expected``, the update only applies while the document still
        matches those fields, so concurrent callers can claim a transition
        exactly once. Returns None when nothing matched.
        """
        try:
            changes = dict(updates)
            changes.pop("id", None)
            changes["updated_at"] = utc_now()
            key = self._key(container, item_id, partition_key)
            key.update(expected or {})
            doc = await self._collection(container).find_one_and_update(
                key,
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None and expected is None:
                logger.warning(f"{container} item {item_id} not found for update")
            return self._clean(doc)
        except PyMongoError as e:
            logger.error(f"Failed to update {container} item {item_id}: {e}")
            raise UpstreamError(f"Database error: {e}")

    async def delete_item(
        self, container: str, item_id: str, partition_key: Optional[str] = None
    ) -> bool:
        try:
            result = await self._collection(container).delete_one(self._key(container, item_id, partition_key))
            return result.deleted_count > 0
        except PyMongoError as e:
            logger.error(f"Failed to delete {container} item {item_id}: {e}")
            raise UpstreamError(f"Database error: {e}")

    async def delete_items(self, container: str, filters: Dict[str, Any]) -> int:
        try:
            result = await self._collection(container).delete_many(filters)
            return result.deleted_count
        except PyMongoError as e:
            logger.error(f"Failed to delete {container} items: {e}")
            raise UpstreamError(f"Database error: {e}")

    async def query_items(
        self,
        container: str,
        filters: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self._collection(container).find(filters or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=limit)
            return [self._clean(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"Failed to query {container}: {e}")
            raise UpstreamError(f"Database error: {e}")

    async def count_items(self, container: str, filters: Optional[Dict[str, Any]] = None) -> int:
        try:
            return await self._collection(container).count_documents(filters or {})
        except PyMongoError as e:
            logger.error(f"Failed to count {container}: {e}")
            raise UpstreamError(f"Database error: {e}")

    # Meetings

    async def create_meeting(self, meeting: Meeting) -> Meeting:
        """Create a new meeting."""
        await self.create_item("meetings", meeting.to_doc())
        logger.info(f"Created meeting {meeting.id} for user {meeting.user_id}")
        return meeting

    async def get_meeting(self, meeting_id: str, user_id: Optional[str] = None) -> Optional[Meeting]:
        """Get a meeting by record id, falling back to the Graph event id."""
        doc = await self.get_item("meetings", meeting_id, user_id)
        if doc is None:
            filters: Dict[str, Any] = {"graph_event_id": meeting_id}
            if user_id:
                filters["user_id"] = user_id
            docs = await self.query_items("meetings", filters, limit=1)
            doc = docs[0] if docs else None
        return Meeting(**doc) if doc else None

    async def update_meeting(self, meeting_id: str, updates: Dict[str, Any]) -> Optional[Meeting]:
        doc = await self.update_item("meetings", meeting_id, updates)
        return Meeting(**doc) if doc else None

    async def get_meetings_by_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        start_after: Optional[datetime] = None,
        start_before: Optional[datetime] = None,
    ) -> List[Meeting]:
        filters: Dict[str, Any] = {"user_id": user_id}
        if status:
            filters["status"] = status
        if start_after or start_before:
            window: Dict[str, Any] = {}
            if start_after:
                window["$gte"] = start_after
            if start_before:
                window["$lt"] = start_before
            filters["start_time"] = window
        docs = await self.query_items(
            "meetings", filters, sort=[("start_time", DESCENDING)], limit=limit, skip=offset
        )
        return [Meeting(**doc) for doc in docs]


# Dependency injection
_dao_instance = None


def set_dao_instance(dao):
    """Set the global DAO instance."""
    global _dao_instance
    _dao_instance = dao


def get_dao():
    """Get DAO instance for dependency injection."""
    global _dao_instance
    if _dao_instance is None:
        raise RuntimeError("DAO instance not initialized. Call set_dao_instance() first.")
    return _dao_instance
