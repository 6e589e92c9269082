import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import BigInteger, create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    SavingsFund,
    SavingsTransaction,
    SavingsTransactionType,
    Transaction,
    User,
)
from schemas import ReversalIn, SavingsFundIn, SavingsTransactionIn
from services import (
    ConflictError,
    InsufficientFundsError,
    LedgerError,
    NotFoundError,
    SavingsFundService,
    SavingsLedgerService,
)


def make_engine(url: str = "sqlite+pysqlite:///:memory:"):
    engine = create_engine(url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return engine


def make_session(engine=None):
    engine = engine or make_engine()
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, email: str = "ana@example.com") -> int:
    user = User(name="Ana", email=email, password_hash="not-a-real-hash")
    session.add(user)
    session.commit()
    return user.id


def make_fund(session, user_id: int, name: str = "Vacaciones") -> SavingsFund:
    return SavingsFundService(session, user_id).create(
        SavingsFundIn(name=name, description=None, color="#00AAFF")
    )


def entry(fund_id: int, kind: SavingsTransactionType, amount: str, day: int = 1):
    return SavingsTransactionIn(
        savings_fund_id=fund_id,
        type=kind,
        amount=amount,
        description=None,
        date=date(2025, 1, day),
    )


def stored_balance(session, fund_id: int) -> int:
    return session.execute(
        select(SavingsFund.balance_cents).where(SavingsFund.id == fund_id)
    ).scalar_one()


def entry_count(session, fund_id: int) -> int:
    return session.execute(
        select(func.count(SavingsTransaction.id)).where(
            SavingsTransaction.savings_fund_id == fund_id
        )
    ).scalar_one()


def test_new_fund_starts_at_zero() -> None:
    session = make_session()
    user_id = make_user(session)

    fund = make_fund(session, user_id)

    assert fund.balance_cents == 0
    assert entry_count(session, fund.id) == 0


def test_deposit_and_withdrawal_keep_balance_equal_to_ledger_sum() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)

    steps = [
        (SavingsTransactionType.deposit, "120.50"),
        (SavingsTransactionType.deposit, "0.10"),
        (SavingsTransactionType.withdrawal, "20.20"),
        (SavingsTransactionType.deposit, "0.20"),
        (SavingsTransactionType.withdrawal, "100.60"),
    ]
    for day, (kind, amount) in enumerate(steps, start=1):
        _, fund = ledger.apply(entry(fund.id, kind, amount, day))
        entries = session.scalars(
            select(SavingsTransaction).where(
                SavingsTransaction.savings_fund_id == fund.id
            )
        ).all()
        expected = max(0, sum(e.signed_amount_cents for e in entries))
        assert fund.balance_cents == expected
        assert fund.balance_cents >= 0

    assert stored_balance(session, fund.id) == 0
    assert ledger.audit(fund.id).consistent


def test_decimal_amounts_do_not_drift() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)

    for day in range(1, 11):
        _, fund = ledger.apply(
            entry(fund.id, SavingsTransactionType.deposit, "0.10", day)
        )

    assert fund.balance_cents == 100


def test_withdrawal_over_balance_is_rejected_without_mutation() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)
    ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "30.00"))

    with pytest.raises(InsufficientFundsError):
        ledger.apply(entry(fund.id, SavingsTransactionType.withdrawal, "30.01"))

    assert stored_balance(session, fund.id) == 3_000
    assert entry_count(session, fund.id) == 1


def test_withdrawal_from_empty_fund_is_rejected() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)

    with pytest.raises(InsufficientFundsError):
        SavingsLedgerService(session, user_id).apply(
            entry(fund.id, SavingsTransactionType.withdrawal, "0.01")
        )

    assert stored_balance(session, fund.id) == 0
    assert entry_count(session, fund.id) == 0


def test_example_scenario_ends_with_deletable_fund() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)

    _, fund = ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "100.00", 1))
    assert fund.balance_cents == 10_000

    _, fund = ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "50.00", 2))
    assert fund.balance_cents == 15_000

    with pytest.raises(InsufficientFundsError):
        ledger.apply(entry(fund.id, SavingsTransactionType.withdrawal, "200.00", 3))
    assert stored_balance(session, fund.id) == 15_000

    _, fund = ledger.apply(
        entry(fund.id, SavingsTransactionType.withdrawal, "150.00", 4)
    )
    assert fund.balance_cents == 0

    SavingsFundService(session, user_id).delete(fund.id)
    assert session.get(SavingsFund, fund.id) is None
    assert entry_count(session, fund.id) == 0


def test_failed_persistence_rolls_back_entry_and_balance(monkeypatch) -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)
    ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "40.00"))

    def broken_update(self, fund_id, entry_type, amount_cents):
        raise OperationalError("UPDATE savings_funds", {}, Exception("disk I/O error"))

    monkeypatch.setattr(SavingsLedgerService, "_apply_balance", broken_update)

    with pytest.raises(LedgerError):
        ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "10.00", 2))

    assert stored_balance(session, fund.id) == 4_000
    assert entry_count(session, fund.id) == 1


def test_stale_balance_read_cannot_overdraw(tmp_path) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    setup = make_session(engine)
    user_id = make_user(setup)
    fund = make_fund(setup, user_id)
    SavingsLedgerService(setup, user_id).apply(
        entry(fund.id, SavingsTransactionType.deposit, "25.00")
    )
    setup.close()

    first = make_session(engine)
    second = make_session(engine)
    # Both requests have already read the fund at 25.00.
    first.get(SavingsFund, fund.id)
    stale = second.get(SavingsFund, fund.id)
    second.commit()
    assert stale.balance_cents == 2_500

    SavingsLedgerService(first, user_id).apply(
        entry(fund.id, SavingsTransactionType.withdrawal, "25.00", 2)
    )

    with pytest.raises(InsufficientFundsError):
        SavingsLedgerService(second, user_id).apply(
            entry(fund.id, SavingsTransactionType.withdrawal, "25.00", 2)
        )

    check = make_session(engine)
    assert stored_balance(check, fund.id) == 0
    assert entry_count(check, fund.id) == 2
    withdrawals = check.execute(
        select(func.count(SavingsTransaction.id)).where(
            SavingsTransaction.type == SavingsTransactionType.withdrawal
        )
    ).scalar_one()
    assert withdrawals == 1


def test_apply_requires_owned_fund() -> None:
    session = make_session()
    owner = make_user(session, "ana@example.com")
    intruder = make_user(session, "beto@example.com")
    fund = make_fund(session, owner)

    with pytest.raises(NotFoundError):
        SavingsLedgerService(session, intruder).apply(
            entry(fund.id, SavingsTransactionType.deposit, "10.00")
        )
    with pytest.raises(NotFoundError):
        SavingsLedgerService(session, owner).apply(
            entry(9_999, SavingsTransactionType.deposit, "10.00")
        )

    assert entry_count(session, fund.id) == 0


def test_reversal_posts_compensating_entry_once() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)
    deposit, _ = ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "80.00"))
    ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "20.00", 2))

    reversal, fund = ledger.reverse(ReversalIn(id=deposit.id, date=date(2025, 1, 3)))

    assert reversal.type == SavingsTransactionType.withdrawal
    assert reversal.amount_cents == 8_000
    assert reversal.reversal_of_id == deposit.id
    assert reversal.description == f"Reverso de la transacción #{deposit.id}"
    assert fund.balance_cents == 2_000
    assert session.get(SavingsTransaction, deposit.id).type == (
        SavingsTransactionType.deposit
    )

    with pytest.raises(ConflictError):
        ledger.reverse(ReversalIn(id=deposit.id))
    with pytest.raises(ConflictError):
        ledger.reverse(ReversalIn(id=reversal.id))
    assert ledger.audit(fund.id).consistent


def test_reversing_spent_deposit_is_an_overdraft() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)
    deposit, _ = ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "50.00"))
    ledger.apply(entry(fund.id, SavingsTransactionType.withdrawal, "30.00", 2))

    with pytest.raises(InsufficientFundsError):
        ledger.reverse(ReversalIn(id=deposit.id))

    assert stored_balance(session, fund.id) == 2_000
    assert entry_count(session, fund.id) == 2


def test_concurrent_reversals_of_one_entry_conflict(tmp_path, monkeypatch) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    setup = make_session(engine)
    user_id = make_user(setup)
    fund = make_fund(setup, user_id)
    deposit, _ = SavingsLedgerService(setup, user_id).apply(
        entry(fund.id, SavingsTransactionType.deposit, "10.00")
    )
    setup.close()

    # Both requests pass the already-reversed check before either posts.
    both_checked = threading.Barrier(2, timeout=5)
    post_entry = SavingsLedgerService._post_entry

    def post_after_both_checked(self, *args, **kwargs):
        both_checked.wait()
        return post_entry(self, *args, **kwargs)

    monkeypatch.setattr(SavingsLedgerService, "_post_entry", post_after_both_checked)

    results: list[str] = []

    def reverse_once() -> None:
        session = make_session(engine)
        try:
            SavingsLedgerService(session, user_id).reverse(ReversalIn(id=deposit.id))
            results.append("ok")
        except ConflictError:
            results.append("conflict")
        finally:
            session.close()

    workers = [threading.Thread(target=reverse_once) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert sorted(results) == ["conflict", "ok"]
    check = make_session(engine)
    assert stored_balance(check, fund.id) == 0
    assert entry_count(check, fund.id) == 2


def test_largest_accepted_amount_fits_money_columns() -> None:
    for column in (
        SavingsFund.__table__.c.balance_cents,
        SavingsTransaction.__table__.c.amount_cents,
        Transaction.__table__.c.amount_cents,
    ):
        assert isinstance(column.type, BigInteger)

    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)

    largest, fund = ledger.apply(
        entry(fund.id, SavingsTransactionType.deposit, "9999999999.99")
    )

    assert largest.amount_cents == 999_999_999_999
    assert stored_balance(session, fund.id) == 999_999_999_999
    assert ledger.audit(fund.id).consistent


def test_zero_amount_bypassing_validation_is_refused_by_database() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    unchecked = SavingsTransactionIn.model_construct(
        savings_fund_id=fund.id,
        type=SavingsTransactionType.deposit,
        amount=Decimal("0"),
        description=None,
        date=date(2025, 1, 1),
    )

    with pytest.raises(LedgerError):
        SavingsLedgerService(session, user_id).apply(unchecked)

    assert stored_balance(session, fund.id) == 0
    assert entry_count(session, fund.id) == 0


def test_audit_reports_drift_without_repairing() -> None:
    session = make_session()
    user_id = make_user(session)
    fund = make_fund(session, user_id)
    ledger = SavingsLedgerService(session, user_id)
    ledger.apply(entry(fund.id, SavingsTransactionType.deposit, "10.00"))

    fund.balance_cents = 999
    session.commit()

    audit = ledger.audit(fund.id)
    assert audit.balance_cents == 999
    assert audit.ledger_cents == 1_000
    assert not audit.consistent
    assert stored_balance(session, fund.id) == 999


def test_list_is_newest_first_and_filterable_by_fund() -> None:
    session = make_session()
    user_id = make_user(session)
    travel = make_fund(session, user_id, "Viajes")
    house = make_fund(session, user_id, "Casa")
    ledger = SavingsLedgerService(session, user_id)
    ledger.apply(entry(travel.id, SavingsTransactionType.deposit, "5.00", 3))
    ledger.apply(entry(house.id, SavingsTransactionType.deposit, "7.00", 9))
    ledger.apply(entry(travel.id, SavingsTransactionType.deposit, "1.00", 5))

    items = ledger.list_all()
    assert [e.date.day for e in items] == [9, 5, 3]
    assert items[0].savings_fund.name == "Casa"

    only_travel = ledger.list_all(savings_fund_id=travel.id)
    assert {e.savings_fund_id for e in only_travel} == {travel.id}
    assert len(only_travel) == 2

    other_user = make_user(session, "beto@example.com")
    assert SavingsLedgerService(session, other_user).list_all() == []
    with pytest.raises(NotFoundError):
        SavingsLedgerService(session, other_user).list_all(savings_fund_id=travel.id)
