import structlog
from sqlalchemy.exc import SQLAlchemyError

from membership_service.errors import StorageError
from membership_service.models import Profile

logger = structlog.get_logger(__name__)


class ProfileStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _first(self, *criteria) -> Profile | None:
        db = self.session_factory()
        try:
            return db.query(Profile).filter(*criteria).first()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load profile: {exc}") from exc
        finally:
            db.close()

    def get(self, identity_id: str) -> Profile | None:
        return self._first(Profile.id == identity_id)

    def find_by_email(self, email: str) -> Profile | None:
        return self._first(Profile.email == email)

    def find_by_payment(self, payment_id: str) -> Profile | None:
        return self._first(Profile.payment_id == payment_id)

    def upsert(self, identity_id: str, email: str, name: str, phone: str, payment_id: str) -> None:
        """Activate membership for ``identity_id``, linking it to ``payment_id``.

        Updates the existing row in place (keeping ``created_at``) or inserts
        a new one keyed by the identity id.
        """
        db = self.session_factory()
        try:
            profile = db.get(Profile, identity_id)
            created = profile is None
            if created:
                profile = Profile(id=identity_id)
                db.add(profile)
            profile.email = email
            profile.name = name
            profile.phone = phone
            profile.payment_id = payment_id
            profile.membership_status = "active"
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Profile write failed: {exc}") from exc
        finally:
            db.close()

        logger.info(
            "profile_created" if created else "profile_updated",
            identity_id=identity_id,
            payment_id=payment_id,
        )


def serialize_profile(profile: Profile | None) -> dict | None:
    if profile is None:
        return None
    return {
        "id": profile.id,
        "email": profile.email,
        "name": profile.name,
        "phone": profile.phone,
        "membership_status": profile.membership_status,
        "payment_id": profile.payment_id,
        "created_at": profile.created_at.isoformat() if profile.created_at else None,
    }
