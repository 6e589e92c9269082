from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, TypeVar

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from auth import hash_password, verify_password
from models import (
    Category,
    SavingsFund,
    SavingsTransaction,
    SavingsTransactionType,
    Transaction,
    User,
)
from schemas import (
    CategoryIn,
    CategoryUpdate,
    RegisterIn,
    ReversalIn,
    SavingsFundIn,
    SavingsFundUpdate,
    SavingsTransactionIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class InsufficientFundsError(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


class LedgerError(RuntimeError):
    pass


OwnedModel = TypeVar(
    "OwnedModel", Category, SavingsFund, Transaction, SavingsTransaction
)

NOT_FOUND_MESSAGES: dict[type, str] = {
    Category: "Categoría no encontrada o no pertenece al usuario",
    SavingsFund: "El fondo de ahorro no existe o no pertenece al usuario",
    Transaction: "Transacción no encontrada o no pertenece al usuario",
    SavingsTransaction: "Transacción de ahorro no encontrada o no pertenece al usuario",
}


def get_owned(
    session: Session,
    model: type[OwnedModel],
    entity_id: int,
    user_id: int,
    *,
    for_update: bool = False,
) -> OwnedModel:
    # Missing and foreign rows raise the same error so existence never leaks.
    stmt = select(model).where(model.id == entity_id, model.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    entity = session.scalar(stmt)
    if entity is None:
        raise NotFoundError(NOT_FOUND_MESSAGES[model])
    return entity


def _commit_or_conflict(session: Session, message: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(message) from exc


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def register(self, data: RegisterIn) -> User:
        existing = self.session.scalar(select(User).where(User.email == data.email))
        if existing:
            raise ConflictError("El correo electrónico ya está registrado")
        user = User(
            name=data.name,
            email=data.email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        _commit_or_conflict(self.session, "El correo electrónico ya está registrado")
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )
        if not user or not verify_password(password, user.password_hash):
            raise AuthenticationError("Credenciales inválidas")
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name.asc(), Category.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        return get_owned(self.session, Category, category_id, self.user_id)

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id, Category.name == name
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def create(self, data: CategoryIn) -> Category:
        if self._name_taken(data.name):
            raise ConflictError("Ya existe una categoría con ese nombre")
        category = Category(user_id=self.user_id, name=data.name, color=data.color)
        self.session.add(category)
        _commit_or_conflict(self.session, "Ya existe una categoría con ese nombre")
        self.session.refresh(category)
        return category

    def update(self, data: CategoryUpdate) -> Category:
        category = self.get(data.id)
        fields = data.model_fields_set - {"id"}
        if "name" in fields and data.name != category.name:
            if self._name_taken(data.name, exclude_id=category.id):
                raise ConflictError("Ya existe una categoría con ese nombre")
        for field in fields:
            setattr(category, field, getattr(data, field))
        _commit_or_conflict(self.session, "Ya existe una categoría con ese nombre")
        self.session.refresh(category)
        return category

    def in_use(self, name: str) -> bool:
        stmt = select(Transaction.id).where(
            Transaction.user_id == self.user_id, Transaction.category == name
        )
        return self.session.scalar(stmt.limit(1)) is not None

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if self.in_use(category.name):
            raise ConflictError(
                "No se puede eliminar la categoría porque está en uso en algunas transacciones"
            )
        self.session.delete(category)
        self.session.commit()


class SavingsFundService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[SavingsFund]:
        stmt = (
            select(SavingsFund)
            .where(SavingsFund.user_id == self.user_id)
            .order_by(SavingsFund.created_at.desc(), SavingsFund.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, fund_id: int) -> SavingsFund:
        return get_owned(self.session, SavingsFund, fund_id, self.user_id)

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(SavingsFund.id).where(
            SavingsFund.user_id == self.user_id, SavingsFund.name == name
        )
        if exclude_id is not None:
            stmt = stmt.where(SavingsFund.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def create(self, data: SavingsFundIn) -> SavingsFund:
        if self._name_taken(data.name):
            raise ConflictError("Ya existe un fondo de ahorro con ese nombre")
        fund = SavingsFund(
            user_id=self.user_id,
            name=data.name,
            description=data.description,
            color=data.color,
            balance_cents=0,
        )
        self.session.add(fund)
        _commit_or_conflict(self.session, "Ya existe un fondo de ahorro con ese nombre")
        self.session.refresh(fund)
        return fund

    def update(self, data: SavingsFundUpdate) -> SavingsFund:
        fund = self.get(data.id)
        # Balance is owned by the ledger; only metadata is editable here.
        fields = data.model_fields_set & {"name", "description", "color"}
        if "name" in fields and data.name != fund.name:
            if self._name_taken(data.name, exclude_id=fund.id):
                raise ConflictError("Ya existe un fondo de ahorro con ese nombre")
        for field in fields:
            setattr(fund, field, getattr(data, field))
        _commit_or_conflict(self.session, "Ya existe un fondo de ahorro con ese nombre")
        self.session.refresh(fund)
        return fund

    def delete(self, fund_id: int) -> None:
        fund = get_owned(
            self.session, SavingsFund, fund_id, self.user_id, for_update=True
        )
        if fund.balance_cents != 0:
            self.session.rollback()
            raise ConflictError(
                "No se puede eliminar un fondo de ahorro con saldo. "
                "Primero debes retirar todo el dinero."
            )
        entry_count = len(fund.entries)
        self.session.delete(fund)
        self.session.commit()
        logger.info(
            f"savings_fund_deleted: fund_id={fund_id} entries_removed={entry_count}"
        )


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
        )
        return list(self.session.scalars(stmt).all())

    def get(self, transaction_id: int) -> Transaction:
        return get_owned(self.session, Transaction, transaction_id, self.user_id)

    def _check_fund(self, fund_id: Optional[int]) -> None:
        if fund_id is not None:
            get_owned(self.session, SavingsFund, fund_id, self.user_id)

    def create(self, data: TransactionIn) -> Transaction:
        self._check_fund(data.savings_fund_id)
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category=data.category,
            description=data.description,
            date=data.date,
            savings_fund_id=data.savings_fund_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update(self, data: TransactionUpdate) -> Transaction:
        txn = self.get(data.id)
        fields = data.model_fields_set - {"id"}
        if "savings_fund_id" in fields:
            self._check_fund(data.savings_fund_id)
        for field in fields:
            if field == "amount":
                txn.amount_cents = data.amount_cents
            else:
                setattr(txn, field, getattr(data, field))
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


@dataclass(frozen=True)
class LedgerAudit:
    fund_id: int
    user_id: int
    balance_cents: int
    ledger_cents: int

    @property
    def consistent(self) -> bool:
        return self.balance_cents == self.ledger_cents


def _ledger_sum(session: Session, fund_id: int) -> int:
    signed = case(
        (
            SavingsTransaction.type == SavingsTransactionType.withdrawal,
            -SavingsTransaction.amount_cents,
        ),
        else_=SavingsTransaction.amount_cents,
    )
    total = session.execute(
        select(func.coalesce(func.sum(signed), 0)).where(
            SavingsTransaction.savings_fund_id == fund_id
        )
    ).scalar_one()
    return max(0, int(total or 0))


def audit_all_funds(session: Session, user_id: Optional[int] = None) -> list[LedgerAudit]:
    stmt = select(SavingsFund).order_by(SavingsFund.user_id, SavingsFund.id)
    if user_id is not None:
        stmt = stmt.where(SavingsFund.user_id == user_id)
    audits = []
    for fund in session.scalars(stmt).all():
        audit = LedgerAudit(
            fund_id=fund.id,
            user_id=fund.user_id,
            balance_cents=fund.balance_cents,
            ledger_cents=_ledger_sum(session, fund.id),
        )
        if not audit.consistent:
            logger.warning(
                f"ledger_mismatch: fund_id={fund.id} balance_cents={audit.balance_cents} "
                f"ledger_cents={audit.ledger_cents}"
            )
        audits.append(audit)
    return audits


class SavingsLedgerService:
    """Applies deposits and withdrawals to savings funds.

    A fund's ``balance_cents`` is a cached aggregate of its entries. It is only
    written here, in the same database transaction that inserts the entry, so
    the two can never be observed out of step.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, savings_fund_id: Optional[int] = None) -> list[SavingsTransaction]:
        stmt = (
            select(SavingsTransaction)
            .options(joinedload(SavingsTransaction.savings_fund))
            .where(SavingsTransaction.user_id == self.user_id)
            .order_by(
                SavingsTransaction.date.desc(),
                SavingsTransaction.created_at.desc(),
                SavingsTransaction.id.desc(),
            )
        )
        if savings_fund_id is not None:
            get_owned(self.session, SavingsFund, savings_fund_id, self.user_id)
            stmt = stmt.where(SavingsTransaction.savings_fund_id == savings_fund_id)
        return list(self.session.scalars(stmt).all())

    def apply(
        self, data: SavingsTransactionIn
    ) -> tuple[SavingsTransaction, SavingsFund]:
        fund = get_owned(
            self.session,
            SavingsFund,
            data.savings_fund_id,
            self.user_id,
            for_update=True,
        )
        return self._post_entry(
            fund,
            data.type,
            data.amount_cents,
            description=data.description,
            entry_date=data.date,
        )

    def reverse(self, data: ReversalIn) -> tuple[SavingsTransaction, SavingsFund]:
        original = get_owned(self.session, SavingsTransaction, data.id, self.user_id)
        if original.reversal_of_id is not None:
            raise ConflictError("No se puede revertir una transacción de reverso")

        fund = get_owned(
            self.session,
            SavingsFund,
            original.savings_fund_id,
            self.user_id,
            for_update=True,
        )
        # Checked under the fund lock; uq_savings_txn_reversal_of covers
        # backends where the lock is a no-op.
        already_reversed = self.session.scalar(
            select(SavingsTransaction.id).where(
                SavingsTransaction.reversal_of_id == original.id
            )
        )
        if already_reversed is not None:
            self.session.rollback()
            raise ConflictError("La transacción de ahorro ya fue revertida")

        description = data.description or f"Reverso de la transacción #{original.id}"
        return self._post_entry(
            fund,
            original.type.opposite,
            original.amount_cents,
            description=description,
            entry_date=data.date or date.today(),
            reversal_of_id=original.id,
        )

    def audit(self, fund_id: int) -> LedgerAudit:
        fund = get_owned(self.session, SavingsFund, fund_id, self.user_id)
        result = LedgerAudit(
            fund_id=fund.id,
            user_id=fund.user_id,
            balance_cents=fund.balance_cents,
            ledger_cents=_ledger_sum(self.session, fund.id),
        )
        if not result.consistent:
            logger.warning(
                f"ledger_mismatch: fund_id={fund.id} balance_cents={result.balance_cents} "
                f"ledger_cents={result.ledger_cents}"
            )
        return result

    def _post_entry(
        self,
        fund: SavingsFund,
        entry_type: SavingsTransactionType,
        amount_cents: int,
        *,
        description: Optional[str],
        entry_date: date,
        reversal_of_id: Optional[int] = None,
    ) -> tuple[SavingsTransaction, SavingsFund]:
        if (
            entry_type == SavingsTransactionType.withdrawal
            and fund.balance_cents < amount_cents
        ):
            self.session.rollback()
            logger.warning(
                f"withdrawal_refused: fund_id={fund.id} balance_cents={fund.balance_cents} "
                f"amount_cents={amount_cents}"
            )
            raise InsufficientFundsError("No hay suficiente saldo en el fondo de ahorro")

        fund_id = fund.id
        try:
            entry = SavingsTransaction(
                user_id=self.user_id,
                savings_fund_id=fund_id,
                type=entry_type,
                amount_cents=amount_cents,
                description=description,
                date=entry_date,
                reversal_of_id=reversal_of_id,
            )
            self.session.add(entry)
            self.session.flush()
            if not self._apply_balance(fund_id, entry_type, amount_cents):
                self.session.rollback()
                logger.warning(
                    f"withdrawal_refused: fund_id={fund_id} amount_cents={amount_cents} "
                    "reason=concurrent_update"
                )
                raise InsufficientFundsError(
                    "No hay suficiente saldo en el fondo de ahorro"
                )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            if reversal_of_id is not None and isinstance(exc, IntegrityError):
                logger.warning(
                    f"reversal_refused: fund_id={fund_id} reversal_of_id={reversal_of_id} "
                    "reason=already_reversed"
                )
                raise ConflictError("La transacción de ahorro ya fue revertida") from exc
            logger.exception(
                f"ledger_rollback: fund_id={fund_id} type={entry_type.value} "
                f"amount_cents={amount_cents}"
            )
            raise LedgerError("Error al crear la transacción de ahorro") from exc

        self.session.refresh(fund)
        self.session.refresh(entry)
        logger.info(
            f"ledger_applied: fund_id={fund_id} entry_id={entry.id} "
            f"type={entry_type.value} amount_cents={amount_cents} "
            f"balance_cents={fund.balance_cents}"
        )
        return entry, fund

    def _apply_balance(
        self,
        fund_id: int,
        entry_type: SavingsTransactionType,
        amount_cents: int,
    ) -> bool:
        # The WHERE clause re-checks sufficiency against the committed row, so a
        # balance read before a concurrent withdrawal cannot overdraw the fund.
        stmt = update(SavingsFund).where(
            SavingsFund.id == fund_id, SavingsFund.user_id == self.user_id
        )
        if entry_type == SavingsTransactionType.deposit:
            new_balance = SavingsFund.balance_cents + amount_cents
        else:
            remaining = SavingsFund.balance_cents - amount_cents
            new_balance = case((remaining < 0, 0), else_=remaining)
            stmt = stmt.where(SavingsFund.balance_cents >= amount_cents)
        stmt = stmt.values(
            balance_cents=new_balance, updated_at=datetime.utcnow()
        ).execution_options(synchronize_session=False)
        result = self.session.execute(stmt)
        return result.rowcount == 1
