"""
test_alert_service.py — Alert creation, the recipient lattice, side effects,
expiry and retention.

Run with:
    pytest tests/test_alert_service.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session

from backend.app.alerts.accounts import AccountService
from backend.app.alerts.alert_service import AlertStore
from backend.app.alerts.models import (
    DeliveryOutcome,
    DeviceDelivery,
    Platform,
)
from backend.app.alerts.tables import (
    Alert,
    AlertRecipient,
    RecipientTransition,
    User,
    UserStats,
)
from backend.app.core.database import build_engine, build_session_factory, init_db
from backend.app.core.errors import InvalidTransition, NotFoundError, ValidationError

FINGERPRINT = "a" * 64


async def _make_alert(store, accounts, recipients=("bob", "carol"), **kwargs):
    for uid in recipients:
        await accounts.register_plate(uid, FINGERPRINT)
    return await store.create_alert("alice", FINGERPRINT, kwargs.pop("urgency", "normal"), **kwargs)


async def _reputation(session_factory, user_id):
    async with session_factory() as session:
        return (await session.get(User, user_id)).reputation_score


async def _stats(session_factory, user_id):
    async with session_factory() as session:
        return await session.get(UserStats, user_id)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreateAlert:

    async def test_one_recipient_per_registered_user(self, store, accounts):
        alert = await _make_alert(store, accounts, recipients=("bob", "carol", "dave"))
        loaded = await store.get_alert(alert.alert_id)

        assert loaded.status == "sent"
        assert loaded.escalation_step == 0
        assert sorted(r.user_id for r in loaded.recipients) == ["bob", "carol", "dave"]
        assert all(r.status == "sent" for r in loaded.recipients)

    async def test_empty_fanout_still_persists(self, store):
        alert = await store.create_alert("alice", FINGERPRINT, "high")
        loaded = await store.get_alert(alert.alert_id)
        assert loaded.recipients == []
        assert loaded.status == "sent"

    async def test_default_ttl_by_urgency(self, store, clock):
        alert = await store.create_alert("alice", FINGERPRINT, "urgent")
        assert alert.expires_at - alert.sent_at == timedelta(minutes=15)
        assert alert.sent_at == clock()

    async def test_explicit_ttl(self, store):
        alert = await store.create_alert("alice", FINGERPRINT, "low", ttl=timedelta(minutes=5))
        assert alert.expires_at - alert.sent_at == timedelta(minutes=5)

    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(minutes=-1)])
    async def test_non_positive_ttl_rejected(self, store, session_factory, ttl):
        with pytest.raises(ValidationError):
            await store.create_alert("alice", FINGERPRINT, "low", ttl=ttl)
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(Alert)) == 0

    async def test_unknown_urgency_rejected(self, store):
        with pytest.raises(ValidationError) as exc:
            await store.create_alert("alice", FINGERPRINT, "apocalyptic")
        assert "urgent" in exc.value.details["allowed"]

    async def test_custom_message_is_trimmed(self, store):
        alert = await store.create_alert("alice", FINGERPRINT, "normal", "  gate 3  ")
        assert alert.custom_message == "gate 3"

    async def test_counters_updated(self, store, accounts, session_factory):
        await _make_alert(store, accounts)
        assert (await _stats(session_factory, "alice")).alerts_sent == 1
        assert (await _stats(session_factory, "bob")).alerts_received == 1
        assert (await _stats(session_factory, "carol")).alerts_received == 1

    async def test_reporter_registered_for_own_plate_is_a_recipient(self, store, accounts):
        alert = await _make_alert(store, accounts, recipients=("alice",))
        assert await store.get_recipient_ids(alert.alert_id) == ["alice"]

    async def test_unknown_alert(self, store):
        with pytest.raises(NotFoundError):
            await store.get_alert("missing")


# ---------------------------------------------------------------------------
# Recipient lattice
# ---------------------------------------------------------------------------

class TestTransitions:

    async def test_forward_path(self, store, accounts):
        alert = await _make_alert(store, accounts)
        for status in ("delivered", "acknowledged", "resolved"):
            assert await store.transition_recipient(alert.alert_id, "bob", status) is True

        loaded = await store.get_alert(alert.alert_id)
        bob = next(r for r in loaded.recipients if r.user_id == "bob")
        assert bob.status == "resolved"
        assert bob.delivered_at and bob.acknowledged_at and bob.resolved_at

    async def test_skipping_ahead_is_allowed(self, store, accounts):
        alert = await _make_alert(store, accounts)
        assert await store.transition_recipient(alert.alert_id, "bob", "resolved") is True

    async def test_repeat_is_a_noop(self, store, accounts, session_factory):
        alert = await _make_alert(store, accounts)
        assert await store.transition_recipient(alert.alert_id, "bob", "acknowledged") is True
        assert await store.transition_recipient(alert.alert_id, "bob", "acknowledged") is False

        assert await _reputation(session_factory, "bob") == 1005
        assert (await _stats(session_factory, "bob")).alerts_acknowledged == 1

    async def test_backward_rejected_and_state_unchanged(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")

        with pytest.raises(InvalidTransition) as exc:
            await store.transition_recipient(alert.alert_id, "bob", "delivered")
        assert exc.value.current == "acknowledged"

        loaded = await store.get_alert(alert.alert_id)
        assert next(r for r in loaded.recipients if r.user_id == "bob").status == "acknowledged"

    async def test_acknowledged_and_ignored_are_siblings(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")
        with pytest.raises(InvalidTransition):
            await store.transition_recipient(alert.alert_id, "bob", "ignored")

    async def test_resolved_is_terminal(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "resolved")
        for status in ("sent", "delivered", "acknowledged", "ignored"):
            with pytest.raises(InvalidTransition):
                await store.transition_recipient(alert.alert_id, "bob", status)

    async def test_unknown_status_rejected(self, store, accounts):
        alert = await _make_alert(store, accounts)
        with pytest.raises(ValidationError):
            await store.transition_recipient(alert.alert_id, "bob", "teleported")

    async def test_non_recipient(self, store, accounts):
        alert = await _make_alert(store, accounts)
        with pytest.raises(NotFoundError):
            await store.transition_recipient(alert.alert_id, "mallory", "acknowledged")

    async def test_response_text_stored(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged", response="on_my_way")
        loaded = await store.get_alert(alert.alert_id)
        assert next(r for r in loaded.recipients if r.user_id == "bob").response == "on_my_way"

    async def test_every_applied_transition_logged(self, store, accounts, session_factory):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "delivered")
        await store.transition_recipient(alert.alert_id, "bob", "resolved")
        await store.transition_recipient(alert.alert_id, "bob", "resolved")

        async with session_factory() as session:
            rows = (await session.execute(
                select(RecipientTransition.from_status, RecipientTransition.to_status)
                .where(RecipientTransition.user_id == "bob")
                .order_by(RecipientTransition.id)
            )).all()
        assert rows == [("sent", "delivered"), ("delivered", "resolved")]


class TestSideEffects:

    async def test_ack_then_resolve_reputation(self, store, accounts, session_factory):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")
        await store.transition_recipient(alert.alert_id, "bob", "resolved")
        await store.transition_recipient(alert.alert_id, "bob", "resolved")

        assert await _reputation(session_factory, "bob") == 1000 + 5 + 15
        assert await _reputation(session_factory, "alice") == 1000 + 10
        assert await _reputation(session_factory, "carol") == 1000

    async def test_delivered_and_ignored_have_no_reputation_effect(self, store, accounts, session_factory):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "delivered")
        await store.transition_recipient(alert.alert_id, "carol", "ignored")
        assert await _reputation(session_factory, "bob") == 1000
        assert await _reputation(session_factory, "carol") == 1000

    async def test_response_time_recorded_once(self, store, accounts, session_factory, clock):
        alert = await _make_alert(store, accounts)
        clock.advance(seconds=90)
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")
        clock.advance(seconds=60)
        await store.transition_recipient(alert.alert_id, "bob", "resolved")

        stats = await _stats(session_factory, "bob")
        assert stats.response_samples == 1
        assert stats.average_response_seconds == pytest.approx(90.0)
        assert stats.alerts_acknowledged == 1
        assert stats.alerts_resolved == 1

    async def test_recompute_matches_incremental(self, store, accounts, session_factory, clock):
        first = await _make_alert(store, accounts)
        clock.advance(seconds=30)
        await store.transition_recipient(first.alert_id, "bob", "acknowledged")
        second = await store.create_alert("alice", FINGERPRINT, "high")
        clock.advance(seconds=90)
        await store.transition_recipient(second.alert_id, "bob", "resolved")

        before = (await _stats(session_factory, "bob")).to_dict()
        after = (await store.recompute_user_stats("bob")).to_dict()

        for key in ("plates_registered", "alerts_received", "alerts_acknowledged",
                    "alerts_resolved", "response_samples"):
            assert after[key] == before[key]
        assert after["average_response_seconds"] == pytest.approx(before["average_response_seconds"])
        assert after["alerts_received"] == 2
        assert after["average_response_seconds"] == pytest.approx(60.0)

    async def test_recompute_unknown_user(self, store):
        with pytest.raises(NotFoundError):
            await store.recompute_user_stats("ghost")


class TestAggregate:

    async def test_ratchets_forward(self, store, accounts):
        alert = await _make_alert(store, accounts)
        aid = alert.alert_id

        await store.transition_recipient(aid, "bob", "delivered")
        assert (await store.get_alert(aid)).status == "delivered"

        await store.transition_recipient(aid, "bob", "acknowledged")
        assert (await store.get_alert(aid)).status == "acknowledged"

        # carol's later delivery must not drag the aggregate back
        await store.transition_recipient(aid, "carol", "delivered")
        assert (await store.get_alert(aid)).status == "acknowledged"

        await store.transition_recipient(aid, "carol", "resolved")
        assert (await store.get_alert(aid)).status == "resolved"

    async def test_first_delivery_sets_alert_delivered_at(self, store, accounts, clock):
        alert = await _make_alert(store, accounts)
        clock.advance(seconds=5)
        first = clock()
        await store.transition_recipient(alert.alert_id, "bob", "delivered")
        clock.advance(seconds=5)
        await store.transition_recipient(alert.alert_id, "carol", "delivered")
        assert (await store.get_alert(alert.alert_id)).delivered_at == first

    async def test_mark_delivered_is_idempotent(self, store, accounts, session_factory):
        alert = await _make_alert(store, accounts)
        assert await store.mark_delivered(alert.alert_id, "bob") is True
        assert await store.mark_delivered(alert.alert_id, "bob") is False

        loaded = await store.get_alert(alert.alert_id)
        assert loaded.status == "delivered"
        async with session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(RecipientTransition)
                .where(RecipientTransition.to_status == "delivered")
            )
        assert count == 1

    async def test_mark_delivered_keeps_answered_status(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")
        assert await store.mark_delivered(alert.alert_id, "bob") is True

        loaded = await store.get_alert(alert.alert_id)
        bob = next(r for r in loaded.recipients if r.user_id == "bob")
        assert bob.status == "acknowledged"
        assert bob.delivered_at is not None


class TestConcurrency:

    @pytest.fixture
    async def file_store(self, tmp_path, clock):
        eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}")
        await init_db(eng)
        factory = build_session_factory(eng)
        yield AlertStore(factory, clock=clock), factory
        await eng.dispose()

    async def test_same_transition_applied_once(self, file_store):
        store, factory = file_store
        accounts = AccountService(factory, clock=store.clock)
        alert = await _make_alert(store, accounts)

        results = await asyncio.gather(*(
            store.transition_recipient(alert.alert_id, "bob", "resolved") for _ in range(5)
        ))

        assert sorted(results) == [False, False, False, False, True]
        assert await _reputation(factory, "bob") == 1015
        assert await _reputation(factory, "alice") == 1010

    async def test_one_winner_per_escalation_step(self, file_store):
        store, factory = file_store
        accounts = AccountService(factory, clock=store.clock)
        alert = await _make_alert(store, accounts)

        results = await asyncio.gather(*(
            store.advance_escalation(alert.alert_id, 0) for _ in range(3)
        ), return_exceptions=True)

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 2
        assert all(isinstance(r, InvalidTransition) for r in losers)
        assert (await store.get_alert(alert.alert_id)).escalation_step == 1


class TestLockOrder:
    """Every writer locks the alert row before any of its recipient rows."""

    @pytest.fixture
    def locked_tables(self):
        locked = []

        def _record(state):
            if not state.is_select:
                return
            sql = str(state.statement.compile(dialect=postgresql.dialect()))
            if "FOR UPDATE" in sql:
                locked.append(state.statement.column_descriptions[0]["entity"].__tablename__)

        event.listen(Session, "do_orm_execute", _record)
        yield locked
        event.remove(Session, "do_orm_execute", _record)

    async def test_transition(self, store, accounts, locked_tables):
        alert = await _make_alert(store, accounts)
        locked_tables.clear()

        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")

        assert locked_tables[-2:] == ["alerts", "alert_recipients"]

    async def test_mark_delivered(self, store, accounts, locked_tables):
        alert = await _make_alert(store, accounts)
        locked_tables.clear()

        await store.mark_delivered(alert.alert_id, "bob")

        assert locked_tables == ["alerts", "alert_recipients"]

    async def test_expiry_sweep(self, store, accounts, clock, locked_tables):
        await _make_alert(store, accounts, ttl=timedelta(minutes=5))
        clock.advance(minutes=6)
        locked_tables.clear()

        assert await store.expire_overdue() == 1

        assert locked_tables == ["alerts", "alert_recipients"]


# ---------------------------------------------------------------------------
# Alert-level lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:

    async def test_advance_escalation(self, store, accounts):
        alert = await _make_alert(store, accounts)
        assert (await store.advance_escalation(alert.alert_id, 0)).escalation_step == 1
        assert (await store.advance_escalation(alert.alert_id, 1)).escalation_step == 2

    async def test_stale_step_is_rejected(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.advance_escalation(alert.alert_id, 0)

        with pytest.raises(InvalidTransition) as exc:
            await store.advance_escalation(alert.alert_id, 0)

        assert exc.value.current == "step 1"
        assert (await store.get_alert(alert.alert_id)).escalation_step == 1

    async def test_rewind_releases_only_the_claimed_step(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.advance_escalation(alert.alert_id, 0)

        assert await store.rewind_escalation(alert.alert_id, 1) is True
        assert await store.rewind_escalation(alert.alert_id, 1) is False
        assert (await store.get_alert(alert.alert_id)).escalation_step == 0

    async def test_cancel(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.cancel_alert(alert.alert_id)

        loaded = await store.get_alert(alert.alert_id)
        assert loaded.status == "cancelled"
        assert all(r.status == "sent" for r in loaded.recipients)

    async def test_cancelled_alert_rejects_everything(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.cancel_alert(alert.alert_id)

        with pytest.raises(InvalidTransition):
            await store.transition_recipient(alert.alert_id, "bob", "acknowledged")
        with pytest.raises(InvalidTransition):
            await store.advance_escalation(alert.alert_id, 0)
        with pytest.raises(InvalidTransition):
            await store.cancel_alert(alert.alert_id)

    async def test_resolved_alert_cannot_be_cancelled(self, store, accounts):
        alert = await _make_alert(store, accounts)
        await store.transition_recipient(alert.alert_id, "bob", "resolved")
        with pytest.raises(InvalidTransition):
            await store.cancel_alert(alert.alert_id)


class TestExpiry:

    async def test_sweep_marks_pending_recipients_ignored(self, store, accounts, clock):
        alert = await _make_alert(store, accounts, ttl=timedelta(minutes=30))
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")

        clock.advance(minutes=31)
        assert await store.expire_overdue() == 1
        assert await store.expire_overdue() == 0

        loaded = await store.get_alert(alert.alert_id)
        statuses = {r.user_id: r.status for r in loaded.recipients}
        assert loaded.status == "expired"
        assert statuses == {"bob": "acknowledged", "carol": "ignored"}

    async def test_not_yet_due(self, store, accounts, clock):
        await _make_alert(store, accounts, ttl=timedelta(minutes=30))
        clock.advance(minutes=29)
        assert await store.expire_overdue() == 0

    async def test_get_alert_expires_lazily(self, store, accounts, clock):
        alert = await _make_alert(store, accounts, ttl=timedelta(minutes=10))
        clock.advance(minutes=11)
        assert (await store.get_alert(alert.alert_id)).status == "expired"

    async def test_still_open_at_the_exact_deadline(self, store, accounts, clock):
        alert = await _make_alert(store, accounts, ttl=timedelta(minutes=1))

        clock.advance(minutes=1)
        loaded = await store.get_alert(alert.alert_id)
        assert loaded.status == "sent"
        assert {r.status for r in loaded.recipients} == {"sent"}

        clock.advance(microseconds=1)
        assert (await store.get_alert(alert.alert_id)).status == "expired"

    async def test_acknowledged_alert_expires_when_unresolved(self, store, accounts, clock):
        alert = await _make_alert(store, accounts, ttl=timedelta(minutes=10))
        await store.transition_recipient(alert.alert_id, "bob", "acknowledged")
        assert (await store.get_alert(alert.alert_id)).status == "acknowledged"

        clock.advance(minutes=11)
        loaded = await store.get_alert(alert.alert_id)

        assert loaded.status == "expired"
        assert {r.user_id: r.status for r in loaded.recipients} == {
            "bob": "acknowledged", "carol": "ignored",
        }
        with pytest.raises(InvalidTransition):
            await store.advance_escalation(alert.alert_id, 0)

    async def test_resolved_alert_never_expires(self, store, accounts, clock):
        alert = await _make_alert(store, accounts, ttl=timedelta(minutes=10))
        await store.transition_recipient(alert.alert_id, "bob", "resolved")
        clock.advance(hours=1)
        assert (await store.get_alert(alert.alert_id)).status == "resolved"

    async def test_late_answers_after_expiry(self, store, accounts, clock, session_factory):
        alert = await _make_alert(store, accounts, ttl=timedelta(minutes=10))
        clock.advance(minutes=11)

        with pytest.raises(InvalidTransition):
            await store.transition_recipient(alert.alert_id, "carol", "acknowledged")

        assert await store.transition_recipient(alert.alert_id, "carol", "resolved") is True
        assert await _reputation(session_factory, "carol") == 1015
        assert (await store.get_alert(alert.alert_id)).status == "expired"

    async def test_expired_alert_cannot_escalate(self, store, accounts, clock):
        alert = await _make_alert(store, accounts, ttl=timedelta(minutes=10))
        clock.advance(minutes=11)
        with pytest.raises(InvalidTransition):
            await store.advance_escalation(alert.alert_id, 0)


class TestRetention:

    async def test_purge_cascades(self, store, accounts, session_factory, clock):
        old = await _make_alert(store, accounts)
        await store.transition_recipient(old.alert_id, "bob", "delivered")
        clock.advance(days=31)
        fresh = await store.create_alert("alice", FINGERPRINT, "low")

        assert await store.purge_older_than(30) == 1

        async with session_factory() as session:
            alert_ids = list((await session.execute(select(Alert.alert_id))).scalars())
            orphans = await session.scalar(
                select(func.count()).select_from(AlertRecipient)
                .where(AlertRecipient.alert_id == old.alert_id)
            )
            transitions = await session.scalar(
                select(func.count()).select_from(RecipientTransition)
                .where(RecipientTransition.alert_id == old.alert_id)
            )
        assert alert_ids == [fresh.alert_id]
        assert orphans == 0
        assert transitions == 0

    async def test_non_positive_retention_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.purge_older_than(0)


class TestDeliveryLogs:

    async def test_one_row_per_recipient(self, store, accounts):
        alert = await _make_alert(store, accounts)
        devices = [
            DeviceDelivery("bob", "tok-b1", Platform.ANDROID, DeliveryOutcome.SUCCESS),
            DeviceDelivery("bob", "tok-b2", Platform.IOS, DeliveryOutcome.INVALID_TOKEN,
                           provider_code="UNREGISTERED"),
        ]
        await store.record_delivery_logs(
            alert.alert_id, 0, "normal", "Parking Alert", ["bob", "carol"], devices,
        )

        logs = {log.user_id: log for log in await store.list_delivery_logs(alert.alert_id)}
        assert set(logs) == {"bob", "carol"}
        assert (logs["bob"].tokens_targeted, logs["bob"].tokens_succeeded,
                logs["bob"].tokens_invalid) == (2, 1, 1)
        assert logs["bob"].provider_codes == "UNREGISTERED"
        assert logs["carol"].tokens_targeted == 0
        assert logs["carol"].provider_codes is None

    async def test_remove_invalid_tokens(self, store, accounts):
        await accounts.register_device("bob", "tok-b1", "android")
        await accounts.register_device("bob", "tok-b2", "ios")

        removed = await store.remove_invalid_tokens({"bob": ["tok-b1", "not-there"]})

        assert removed == 1
        targets = await store.device_targets(["bob"])
        assert [t.token for t in targets["bob"]] == ["tok-b2"]
