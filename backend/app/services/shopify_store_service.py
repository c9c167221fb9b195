from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import ShopifyStore
from app.services.shopify_errors import ShopNotInstalledError
from app.utils.logger import logger


class ShopifyStoreService:
    """Store Registry: one ``ShopifyStore`` row per canonical shop domain."""

    @staticmethod
    def _to_utc(dt: Optional[datetime]) -> Optional[datetime]:
        """Normalize a datetime to timezone-aware UTC.

        SQLite hands back offset-naive values for ``DateTime(timezone=True)``
        columns while Postgres returns aware ones; comparisons need both to
        be aware.
        """
        if dt is None:
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    def get_by_shop(self, db: Session, shop: str) -> Optional[ShopifyStore]:
        return db.query(ShopifyStore).filter(ShopifyStore.shop == shop).first()

    def get_active_store(
        self,
        db: Session,
        shop: str,
        operator_id: Optional[str] = None,
    ) -> Optional[ShopifyStore]:
        """Installed, active store for ``shop``; scoped to ``operator_id`` when given."""
        query = db.query(ShopifyStore).filter(
            ShopifyStore.shop == shop,
            ShopifyStore.is_active == True,  # noqa: E712
        )
        if operator_id is not None:
            query = query.filter(ShopifyStore.operator_id == operator_id)
        store = query.first()
        if store is None or not store.access_token:
            return None
        return store

    def upsert_installed(
        self,
        db: Session,
        shop: str,
        access_token: str,
        scope: Optional[str],
        operator_id: Optional[str] = None,
    ) -> ShopifyStore:
        """Record a successful install keyed by shop domain only.

        A reinstall overwrites the credential and reactivates the row. An
        operator captured during install is applied when the store is
        unlinked or already linked to that operator; an existing link is
        never cleared or reassigned here.
        """
        now = datetime.now(timezone.utc)
        scopes = [s.strip() for s in (scope or "").split(",") if s.strip()]

        for attempt in range(2):
            store = self.get_by_shop(db, shop)
            created = store is None
            if created:
                store = ShopifyStore(shop=shop, webhook_ids={})
                db.add(store)

            store.access_token = access_token
            store.scope = scope
            store.scopes = scopes
            store.is_active = True
            store.installed_at = now
            store.uninstalled_at = None
            store.updated_at = now

            if operator_id:
                if store.operator_id is None:
                    store.operator_id = operator_id
                elif store.operator_id != operator_id:
                    logger.warning(
                        "[shopify-store] install for shop=%s carried operator=%s but store is linked to operator=%s; keeping existing link",
                        shop,
                        operator_id,
                        store.operator_id,
                    )

            try:
                db.commit()
            except IntegrityError:
                # Two callbacks for a brand-new shop raced on the unique shop
                # constraint; the loser re-reads and updates the winner's row.
                db.rollback()
                if attempt == 0 and created:
                    logger.info("[shopify-store] concurrent install for shop=%s, retrying as update", shop)
                    continue
                raise

            db.refresh(store)
            logger.info(
                "[shopify-store] %s store shop=%s scopes=%s linked=%s",
                "Created" if created else "Updated",
                shop,
                scopes,
                bool(store.operator_id),
            )
            return store

        raise RuntimeError(f"Unable to upsert store for {shop}")  # pragma: no cover

    def link_operator(self, db: Session, shop: str, operator_id: str) -> ShopifyStore:
        """Claim an installed store for ``operator_id``.

        Accepted when the store is installed, active and either unlinked or
        already linked to the same operator.
        """
        store = self.get_by_shop(db, shop)
        if store is None or not store.is_installed:
            raise ShopNotInstalledError(shop)
        if store.operator_id and store.operator_id != operator_id:
            logger.warning(
                "[shopify-store] operator=%s tried to link shop=%s owned by another operator",
                operator_id,
                shop,
            )
            raise ShopNotInstalledError(shop, "Store not installed for this merchant.")

        if store.operator_id != operator_id:
            store.operator_id = operator_id
            store.updated_at = datetime.now(timezone.utc)
            db.commit()
            db.refresh(store)
            logger.info("[shopify-store] Linked shop=%s to operator=%s", shop, operator_id)
        return store

    def mark_uninstalled(self, db: Session, shop: str) -> Optional[ShopifyStore]:
        """Drop the credential and deactivate; idempotent."""
        store = self.get_by_shop(db, shop)
        if store is None:
            return None
        now = datetime.now(timezone.utc)
        store.access_token = None
        store.is_active = False
        store.uninstalled_at = now
        store.updated_at = now
        db.commit()
        db.refresh(store)
        logger.info("[shopify-store] Marked shop=%s uninstalled", shop)
        return store

    def list_for_operator(self, db: Session, operator_id: str) -> List[ShopifyStore]:
        return (
            db.query(ShopifyStore)
            .filter(ShopifyStore.operator_id == operator_id)
            .order_by(ShopifyStore.installed_at.desc())
            .all()
        )

    def list_syncable(self, db: Session) -> List[ShopifyStore]:
        """Active stores that have a linked operator."""
        stores = (
            db.query(ShopifyStore)
            .filter(
                ShopifyStore.is_active == True,  # noqa: E712
                ShopifyStore.operator_id.isnot(None),
            )
            .all()
        )
        return [s for s in stores if s.is_installed]

    def record_webhook_ids(self, db: Session, shop: str, webhook_ids: Dict[str, Any]) -> None:
        store = self.get_by_shop(db, shop)
        if store is None or not webhook_ids:
            return
        merged = dict(store.webhook_ids or {})
        merged.update(webhook_ids)
        # Reassign so the JSON column is flagged dirty.
        store.webhook_ids = merged
        db.commit()

    def to_public_dict(self, store: ShopifyStore) -> Dict[str, Any]:
        """Serializable view without credential fields."""
        return {
            "id": store.id,
            "shop": store.shop,
            "scopes": list(store.scopes or []),
            "isActive": bool(store.is_active),
            "installed": store.is_installed,
            "linked": bool(store.operator_id),
            "installedAt": self._to_utc(store.installed_at).isoformat() if store.installed_at else None,
            "uninstalledAt": self._to_utc(store.uninstalled_at).isoformat() if store.uninstalled_at else None,
            "updatedAt": self._to_utc(store.updated_at).isoformat() if store.updated_at else None,
        }


shopify_store_service = ShopifyStoreService()
