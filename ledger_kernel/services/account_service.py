"""
AccountService -- organisation-scoped chart of accounts (account directory).

Responsibility:
    Creates and maintains accounts, and answers the one question the
    Journal Engine needs: may this account take postings right now?

Failure modes:
    - DuplicateCodeError: account code already used in the organisation.
    - AccountNotFoundError: account or parent missing in the organisation.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.domain.dtos import AccountInfo
from ledger_kernel.exceptions import AccountNotFoundError, DuplicateCodeError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import (
    NORMAL_BALANCE_BY_TYPE,
    Account,
    AccountStatus,
    AccountType,
    NormalBalance,
)
from ledger_kernel.services.base import BaseService

logger = get_logger("services.account")

_UNSET = object()


class AccountService(BaseService[Account]):
    """
    Account directory.

    Contract:
        Flush-only.  Returns ``AccountInfo`` DTOs.

    Non-goals:
        - No cycle detection on the parent tree.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    @staticmethod
    def _to_dto(account: Account) -> AccountInfo:
        return AccountInfo(
            id=account.id,
            organization_id=account.organization_id,
            code=account.code,
            name=account.name,
            account_type=AccountType(account.account_type),
            normal_balance=NormalBalance(account.normal_balance),
            is_postable=account.is_postable,
            status=AccountStatus(account.status),
            parent_id=account.parent_id,
        )

    def create_account(
        self,
        organization_id: UUID,
        actor_id: UUID,
        code: str,
        name: str,
        account_type: AccountType,
        parent_id: UUID | None = None,
        is_postable: bool = True,
        status: AccountStatus = AccountStatus.ACTIVE,
    ) -> AccountInfo:
        """
        Create an account.  Normal balance follows from the account type.

        Raises:
            AccountNotFoundError: parent_id does not exist in the organisation.
            DuplicateCodeError: code already exists in the organisation.
        """
        account_type = AccountType(account_type)
        if parent_id is not None:
            self._require(organization_id, parent_id)

        if self._get_by_code(organization_id, code) is not None:
            raise DuplicateCodeError("Account", code)

        account = Account(
            organization_id=organization_id,
            code=code,
            name=name,
            account_type=account_type,
            normal_balance=NORMAL_BALANCE_BY_TYPE[account_type],
            is_postable=is_postable,
            status=AccountStatus(status),
            parent_id=parent_id,
            created_by_id=actor_id,
        )

        try:
            with self.session.begin_nested():
                self.session.add(account)
                self.session.flush()
        except IntegrityError:
            raise DuplicateCodeError("Account", code) from None

        logger.info(
            "account_created",
            extra={
                "organization_id": str(organization_id),
                "account_code": code,
                "account_type": account_type.value,
            },
        )
        return self._to_dto(account)

    def update_account(
        self,
        organization_id: UUID,
        account_id: UUID,
        actor_id: UUID,
        *,
        name: str | None = None,
        parent_id=_UNSET,
        is_postable: bool | None = None,
        status: AccountStatus | None = None,
    ) -> AccountInfo:
        """
        Patch the mutable fields of an account.

        ``parent_id=None`` detaches the account from its parent; leaving it
        out keeps the current parent.
        """
        account = self._require(organization_id, account_id)

        if name is not None:
            account.name = name
        if parent_id is not _UNSET:
            if parent_id is not None:
                self._require(organization_id, parent_id)
            account.parent_id = parent_id
        if is_postable is not None:
            account.is_postable = is_postable
        if status is not None:
            account.status = AccountStatus(status)
        account.updated_by_id = actor_id

        self.session.flush()
        logger.info(
            "account_updated",
            extra={"organization_id": str(organization_id), "account_code": account.code},
        )
        return self._to_dto(account)

    def get_account(self, organization_id: UUID, account_id: UUID) -> AccountInfo:
        return self._to_dto(self._require(organization_id, account_id))

    def list_accounts(self, organization_id: UUID) -> list[AccountInfo]:
        accounts = self.session.execute(
            select(Account)
            .where(Account.organization_id == organization_id)
            .order_by(Account.code)
        ).scalars().all()
        return [self._to_dto(a) for a in accounts]

    def get_posting_status(
        self,
        organization_id: UUID,
        account_ids: Iterable[UUID],
    ) -> dict[UUID, tuple[bool, AccountStatus]]:
        """
        Return ``{account_id: (is_postable, status)}`` for accounts found in
        the organisation.  Unknown ids are simply absent.
        """
        ids = set(account_ids)
        if not ids:
            return {}
        rows = self.session.execute(
            select(Account.id, Account.is_postable, Account.status).where(
                Account.organization_id == organization_id,
                Account.id.in_(ids),
            )
        ).all()
        return {row.id: (row.is_postable, AccountStatus(row.status)) for row in rows}

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _get_by_code(self, organization_id: UUID, code: str) -> Account | None:
        return self.session.execute(
            select(Account).where(
                Account.organization_id == organization_id,
                Account.code == code,
            )
        ).scalar_one_or_none()

    def _require(self, organization_id: UUID, account_id: UUID) -> Account:
        account = self.session.execute(
            select(Account).where(
                Account.organization_id == organization_id,
                Account.id == account_id,
            )
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account
