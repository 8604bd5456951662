"""Authentication identities and the email -> identity resolver.

Identities live in their own store, separate from application profiles, and
every call here commits on its own. Nothing here is transactional with the
payment or profile writes, so callers that create an identity are
responsible for deleting it again if a later step fails.
"""

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from membership_service.errors import IdentityError, StorageError
from membership_service.models import Identity
from membership_service.profiles import ProfileStore

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 50


class IdentityStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def list_identities(self, page: int = 1, per_page: int = DEFAULT_PAGE_SIZE) -> list[Identity]:
        db = self.session_factory()
        try:
            return (
                db.query(Identity)
                .order_by(Identity.created_at, Identity.id)
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
        except SQLAlchemyError as exc:
            raise IdentityError(f"Failed to list identities: {exc}") from exc
        finally:
            db.close()

    def get_identity(self, identity_id: str) -> Identity | None:
        db = self.session_factory()
        try:
            return db.get(Identity, identity_id)
        except SQLAlchemyError as exc:
            raise IdentityError(f"Failed to load identity: {exc}") from exc
        finally:
            db.close()

    def create_identity(self, email: str, email_confirm: bool = False, user_metadata: dict | None = None) -> str:
        """Create an identity and return its id.

        IntegrityError is re-raised untouched so callers can tell an email
        collision apart from other failures.
        """
        identity = Identity(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            email_confirmed_at=datetime.now(timezone.utc) if email_confirm else None,
            user_metadata=dict(user_metadata or {}),
        )
        identity_id = identity.id

        db = self.session_factory()
        try:
            db.add(identity)
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise IdentityError(f"Failed to create identity: {exc}") from exc
        finally:
            db.close()
        return identity_id

    def delete_identity(self, identity_id: str) -> None:
        db = self.session_factory()
        try:
            identity = db.get(Identity, identity_id)
            if identity is not None:
                db.delete(identity)
                db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise IdentityError(f"Failed to delete identity {identity_id}: {exc}") from exc
        finally:
            db.close()

    def find_by_email(self, email: str, per_page: int = DEFAULT_PAGE_SIZE) -> Identity | None:
        # No direct lookup by email is assumed, so walk every page.
        page = 1
        while True:
            batch = self.list_identities(page=page, per_page=per_page)
            for identity in batch:
                if identity.email.lower() == email:
                    return identity
            if len(batch) < per_page:
                return None
            page += 1


class IdentityResolver:
    def __init__(self, identities: IdentityStore, profiles: ProfileStore):
        self.identities = identities
        self.profiles = profiles

    def resolve_or_create(self, email: str, name: str, phone: str) -> tuple[str, bool]:
        """Return ``(identity_id, is_new)`` for ``email``.

        Looks at profiles first, then the identity store, and only then
        creates a pre-confirmed identity. Raises IdentityError on any failure.
        """
        email = email.strip().lower()

        try:
            profile = self.profiles.find_by_email(email)
        except StorageError as exc:
            raise IdentityError(f"Profile lookup failed: {exc}") from exc
        if profile is not None:
            logger.info("identity_resolved", source="profile", identity_id=profile.id)
            return profile.id, False

        existing = self.identities.find_by_email(email)
        if existing is not None:
            logger.info("identity_resolved", source="identity_store", identity_id=existing.id)
            return existing.id, False

        try:
            identity_id = self.identities.create_identity(
                email,
                email_confirm=True,
                user_metadata={"name": name, "phone": phone},
            )
        except IntegrityError:
            # Another request created it between our scan and insert.
            winner = self.identities.find_by_email(email)
            if winner is None:
                raise IdentityError(f"Identity for {email} collided but could not be found")
            logger.info("identity_resolved", source="concurrent_create", identity_id=winner.id)
            return winner.id, False

        try:
            confirmed = self.identities.get_identity(identity_id)
        except IdentityError:
            self._discard(identity_id)
            raise
        if confirmed is None or not confirmed.confirmed:
            self._discard(identity_id)
            raise IdentityError(f"Identity {identity_id} could not be confirmed after creation")

        logger.info("identity_created", identity_id=identity_id)
        return identity_id, True

    def _discard(self, identity_id: str) -> None:
        logger.warning("identity_discarded", identity_id=identity_id)
        try:
            self.identities.delete_identity(identity_id)
        except IdentityError:
            logger.exception("identity_discard_failed", identity_id=identity_id)
