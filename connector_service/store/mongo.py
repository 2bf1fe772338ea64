"""MongoDB credential store."""

from typing import Any, Dict, Iterable, List, Optional
import logging

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from connector_service.core.database import Database
from connector_service.models import (
    CalendarSync,
    ConnectionStatus,
    Credentials,
    IntegrationConnection,
    WebhookEvent,
)
from connector_service.store.base import CredentialStore
from connector_service.utils.clock import utcnow
from connector_service.utils.crypto import TokenCipher

logger = logging.getLogger(__name__)


class MongoCredentialStore(CredentialStore):
    """Store backed by Motor collections.

    Access and refresh tokens are encrypted before they are written and
    decrypted on read; callers only ever see plaintext Credentials.
    """

    def __init__(self, database: Database, cipher: TokenCipher):
        self.database = database
        self.cipher = cipher

    @property
    def connections(self):
        return self.database.get_collection("connections")

    @property
    def calendar_syncs(self):
        return self.database.get_collection("calendar_syncs")

    @property
    def subscriptions(self):
        return self.database.get_collection("webhook_subscriptions")

    @property
    def webhook_events(self):
        return self.database.get_collection("webhook_events")

    @property
    def quarantine(self):
        return self.database.get_collection("webhook_quarantine")

    async def connect(self) -> None:
        await self.database.connect()
        await self.connections.create_index(
            [("tenant_id", ASCENDING), ("integration_id", ASCENDING)], unique=True
        )
        await self.connections.create_index("status")
        await self.calendar_syncs.create_index(
            [("tenant_id", ASCENDING), ("provider", ASCENDING)], unique=True
        )
        await self.subscriptions.create_index(
            [("integration_id", ASCENDING), ("subscription_id", ASCENDING)], unique=True
        )
        await self.webhook_events.create_index(
            [("integration_id", ASCENDING), ("event_id", ASCENDING)], unique=True
        )

    async def close(self) -> None:
        await self.database.disconnect()

    async def ping(self) -> bool:
        return await self.database.ping()

    # Serialization

    def _encode_credentials(self, credentials: Optional[Credentials]) -> Optional[Dict[str, Any]]:
        if credentials is None:
            return None
        doc = credentials.model_dump()
        doc["access_token"] = self.cipher.encrypt(credentials.access_token)
        if credentials.refresh_token:
            doc["refresh_token"] = self.cipher.encrypt(credentials.refresh_token)
        return doc

    def _decode_credentials(self, doc: Optional[Dict[str, Any]]) -> Optional[Credentials]:
        if not doc:
            return None
        doc = dict(doc)
        doc["access_token"] = self.cipher.decrypt(doc["access_token"])
        if doc.get("refresh_token"):
            doc["refresh_token"] = self.cipher.decrypt(doc["refresh_token"])
        return Credentials(**doc)

    def _encode_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        encoded = {}
        for name, value in fields.items():
            if name == "credentials":
                value = self._encode_credentials(value)
            elif isinstance(value, ConnectionStatus):
                value = value.value
            encoded[name] = value
        return encoded

    def _to_connection(self, doc: Optional[Dict[str, Any]]) -> Optional[IntegrationConnection]:
        if doc is None:
            return None
        doc.pop("_id", None)
        doc["credentials"] = self._decode_credentials(doc.get("credentials"))
        return IntegrationConnection(**doc)

    def _to_calendar_sync(self, doc: Optional[Dict[str, Any]]) -> Optional[CalendarSync]:
        if doc is None:
            return None
        doc.pop("_id", None)
        doc["credentials"] = self._decode_credentials(doc.get("credentials"))
        return CalendarSync(**doc)

    # Integration connections

    async def get(self, tenant_id: str, integration_id: str) -> Optional[IntegrationConnection]:
        doc = await self.connections.find_one({"tenant_id": tenant_id, "integration_id": integration_id})
        return self._to_connection(doc)

    async def upsert(self, tenant_id: str, integration_id: str, fields: Dict[str, Any]) -> IntegrationConnection:
        now = utcnow()
        doc = await self.connections.find_one_and_update(
            {"tenant_id": tenant_id, "integration_id": integration_id},
            {
                "$set": {**self._encode_fields(fields), "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_connection(doc)

    async def update(
        self,
        tenant_id: str,
        integration_id: str,
        fields: Dict[str, Any],
        statuses: Optional[Iterable[ConnectionStatus]] = None,
        expected_generation: Optional[int] = None,
    ) -> Optional[IntegrationConnection]:
        query: Dict[str, Any] = {"tenant_id": tenant_id, "integration_id": integration_id}
        if statuses is not None:
            query["status"] = {"$in": [s.value for s in statuses]}
        if expected_generation is not None:
            query["generation"] = expected_generation

        doc = await self.connections.find_one_and_update(
            query,
            {"$set": {**self._encode_fields(fields), "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_connection(doc)

    async def delete(self, tenant_id: str, integration_id: str) -> bool:
        result = await self.connections.delete_one({"tenant_id": tenant_id, "integration_id": integration_id})
        return result.deleted_count > 0

    async def list_connected(self, tenant_id: Optional[str] = None) -> List[IntegrationConnection]:
        query: Dict[str, Any] = {"status": ConnectionStatus.CONNECTED.value}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        return [self._to_connection(doc) async for doc in self.connections.find(query)]

    async def list_for_tenant(self, tenant_id: str) -> List[IntegrationConnection]:
        return [self._to_connection(doc) async for doc in self.connections.find({"tenant_id": tenant_id})]

    # Calendar syncs

    async def get_calendar_sync(self, tenant_id: str, provider: str) -> Optional[CalendarSync]:
        doc = await self.calendar_syncs.find_one({"tenant_id": tenant_id, "provider": provider})
        return self._to_calendar_sync(doc)

    async def upsert_calendar_sync(self, tenant_id: str, provider: str, fields: Dict[str, Any]) -> CalendarSync:
        now = utcnow()
        doc = await self.calendar_syncs.find_one_and_update(
            {"tenant_id": tenant_id, "provider": provider},
            {
                "$set": {**self._encode_fields(fields), "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_calendar_sync(doc)

    async def update_calendar_sync(
        self,
        tenant_id: str,
        provider: str,
        fields: Dict[str, Any],
        expected_generation: Optional[int] = None,
    ) -> Optional[CalendarSync]:
        query: Dict[str, Any] = {"tenant_id": tenant_id, "provider": provider}
        if expected_generation is not None:
            query["generation"] = expected_generation
        doc = await self.calendar_syncs.find_one_and_update(
            query,
            {"$set": {**self._encode_fields(fields), "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_calendar_sync(doc)

    async def delete_calendar_sync(self, tenant_id: str, provider: str) -> bool:
        result = await self.calendar_syncs.delete_one({"tenant_id": tenant_id, "provider": provider})
        return result.deleted_count > 0

    async def list_calendar_syncs(self, tenant_id: str) -> List[CalendarSync]:
        return [self._to_calendar_sync(doc) async for doc in self.calendar_syncs.find({"tenant_id": tenant_id})]

    async def list_enabled_calendar_syncs(self, tenant_id: Optional[str] = None) -> List[CalendarSync]:
        query: Dict[str, Any] = {"sync_enabled": True, "needs_reauth": {"$ne": True}}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        return [self._to_calendar_sync(doc) async for doc in self.calendar_syncs.find(query)]

    # Webhook bookkeeping

    async def register_subscription(self, integration_id: str, subscription_id: str, tenant_id: str) -> None:
        await self.subscriptions.update_one(
            {"integration_id": integration_id, "subscription_id": subscription_id},
            {"$set": {"tenant_id": tenant_id, "updated_at": utcnow()}},
            upsert=True,
        )

    async def resolve_subscription(self, integration_id: str, subscription_id: str) -> Optional[str]:
        doc = await self.subscriptions.find_one(
            {"integration_id": integration_id, "subscription_id": subscription_id}
        )
        return doc["tenant_id"] if doc else None

    async def record_webhook_event(self, event: WebhookEvent) -> bool:
        try:
            result = await self.webhook_events.update_one(
                {"integration_id": event.integration_id, "event_id": event.event_id},
                {"$set": {**event.model_dump(), "received_at": utcnow()}},
                upsert=True,
            )
        except DuplicateKeyError:
            # Concurrent upsert of the same event
            return False
        return result.upserted_id is not None

    async def quarantine_webhook_event(self, event: WebhookEvent, reason: str) -> None:
        await self.quarantine.insert_one({**event.model_dump(), "reason": reason, "quarantined_at": utcnow()})
        logger.warning(
            "Webhook event quarantined",
            extra={"integration_id": event.integration_id, "event_id": event.event_id, "reason": reason},
        )
