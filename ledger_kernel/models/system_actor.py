"""
Module: ledger_kernel.models.system_actor
Responsibility: The per-organisation non-login actor that background postings
    (accrual jobs, scheduler) are attributed to.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from uuid import UUID

from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString


class SystemActor(TrackedBase):
    """
    Non-login system user of one organisation.

    Guarantees:
        - At most one per organisation (uq_system_actor_org).
        - can_login is always False.
    """

    __tablename__ = "system_actors"

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_system_actor_org"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # The user id stamped on posted_by_id / created_by_id
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    email: Mapped[str] = mapped_column(String(200), nullable=False)

    display_name: Mapped[str] = mapped_column(String(100), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    can_login: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
