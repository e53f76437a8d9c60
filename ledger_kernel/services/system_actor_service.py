"""
SystemActorService -- resolves the actor id used for background postings.

Responsibility:
    Scheduled jobs post accruals on behalf of nobody in particular.  Each
    organisation gets one non-login system actor, created on first use;
    every later call returns the same id.

Failure modes:
    - Concurrent first use: the loser of the insert race hits the unique
      constraint inside a SAVEPOINT and re-reads the winner's row.
"""

from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.system_actor import SystemActor
from ledger_kernel.services.base import BaseService

logger = get_logger("services.system_actor")

DEFAULT_SYSTEM_EMAIL = "system@ledger.local"
DEFAULT_SYSTEM_NAME = "System"


class SystemActorService(BaseService[SystemActor]):
    """Flush-only resolver; the caller commits the provisioned row."""

    def __init__(
        self,
        session: Session,
        email: str = DEFAULT_SYSTEM_EMAIL,
        display_name: str = DEFAULT_SYSTEM_NAME,
    ):
        super().__init__(session)
        self._email = email
        self._display_name = display_name

    def get_system_actor_id(self, organization_id: UUID) -> UUID:
        existing = self._get(organization_id)
        if existing is not None:
            return existing.actor_id

        actor_id = uuid4()
        actor = SystemActor(
            organization_id=organization_id,
            actor_id=actor_id,
            email=self._email,
            display_name=self._display_name,
            is_active=True,
            can_login=False,
            created_by_id=actor_id,
        )
        try:
            with self.session.begin_nested():
                self.session.add(actor)
                self.session.flush()
        except IntegrityError:
            winner = self._get(organization_id)
            if winner is None:
                raise
            return winner.actor_id

        logger.info(
            "system_actor_provisioned",
            extra={"organization_id": str(organization_id), "actor_id": str(actor_id)},
        )
        return actor_id

    def _get(self, organization_id: UUID) -> SystemActor | None:
        return self.session.execute(
            select(SystemActor).where(SystemActor.organization_id == organization_id)
        ).scalar_one_or_none()
