"""SubgateService — wires store, session, dispatcher and notifier together."""

import logging
from typing import Optional

from .config import SubgateSettings
from .dispatch import InboundDispatcher, OutboundNotifier, ReplyConfig
from .entitlements import EntitlementStore, MemoryEntitlementStore
from .session import (
    CredentialStore,
    DatabaseCredentialStore,
    FileCredentialStore,
    MessagingClient,
    SessionManager,
)
from .templates import OrderLabels

logger = logging.getLogger("subgate.service")


class SubgateService:
    """Owns every long-lived component. One instance per process.

    Collaborators can be injected (tests); anything not given is built from
    settings when ``start()`` runs.
    """

    def __init__(
        self,
        settings: SubgateSettings,
        store: Optional[EntitlementStore] = None,
        client: Optional[MessagingClient] = None,
        credentials: Optional[CredentialStore] = None,
    ):
        self.settings = settings
        self._owns_db = False

        if store is None and not settings.database_url:
            logger.warning("No SUBGATE_DATABASE_URL set — subscribers are kept in memory only.")
            store = MemoryEntitlementStore()
        self.store: Optional[EntitlementStore] = store

        if client is None:
            from .session.wacli import WacliClient
            client = WacliClient(
                wacli_path=settings.wacli_path,
                store_dir=settings.wacli_store_dir,
            )
        if credentials is None:
            if settings.database_url:
                credentials = DatabaseCredentialStore()
            else:
                credentials = FileCredentialStore(settings.credentials_file)

        self.session = SessionManager(
            client,
            credentials,
            reconnect_delay=settings.reconnect_delay,
            send_timeout=settings.send_timeout,
        )
        self.dispatcher: Optional[InboundDispatcher] = None
        self.notifier: Optional[OutboundNotifier] = None
        if self.store is not None:
            self._build_dispatch()

    def _build_dispatch(self):
        s = self.settings
        self.dispatcher = InboundDispatcher(
            self.store,
            self.session,
            ReplyConfig(
                default_template=s.default_template,
                not_registered=s.not_registered_message,
                expired=s.expired_message,
            ),
        )
        self.session.add_message_handler(self.dispatcher.submit)
        self.notifier = OutboundNotifier(
            self.store,
            self.session,
            default_template=s.order_template,
            webhook_secret=s.webhook_secret,
            labels=OrderLabels(
                order_id=s.order_id_label,
                customer=s.customer_label,
                items=s.items_label,
                total=s.total_label,
            ),
        )

    async def open_store(self):
        """Connect the database (if configured) without starting WhatsApp."""
        if self.store is not None:
            return
        from .db.connection import apply_schema, init_db
        from .entitlements.pg_store import PostgresEntitlementStore

        await init_db(self.settings.database_url)
        self._owns_db = True
        await apply_schema()
        logger.info("Database connected.")
        self.store = PostgresEntitlementStore()
        self._build_dispatch()

    async def start(self):
        """Open the store, start the dispatcher and connect WhatsApp."""
        logger.info("Starting subgate...")
        await self.open_store()
        await self.dispatcher.start()
        await self.session.start()
        await self.session.connect()
        logger.info(f"Subgate started (subscribers: {await self.store.count()})")

    async def stop(self):
        await self.session.stop()
        if self.dispatcher:
            await self.dispatcher.stop()
        if self.store:
            await self.store.close()
        if self._owns_db:
            from .db.connection import close_db
            await close_db()
            self._owns_db = False
        logger.info("Subgate stopped.")
