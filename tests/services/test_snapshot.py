import logging
from dataclasses import replace

from aura_sync.schemas.entities import AppView, EntityKind, ThemeMode
from aura_sync.services.snapshot import Session, Snapshot
from tests.conftest import make_user


def test_install_notifies_subscribers_with_new_snapshot(store):
    seen = []
    store.subscribe(seen.append)
    new = replace(store.snapshot, users=())

    assert store.install(new) is True
    assert seen == [new]
    assert store.snapshot is new


def test_installing_an_equal_snapshot_is_a_no_op(store):
    seen = []
    store.subscribe(seen.append)

    assert store.install(replace(store.snapshot)) is False
    assert seen == []


def test_unsubscribe_stops_notifications(store):
    seen = []
    unsubscribe = store.subscribe(seen.append)
    unsubscribe()

    store.set_theme(ThemeMode.DARK)

    assert seen == []


def test_failing_subscriber_does_not_reach_the_writer(store, caplog):
    def broken(_snapshot):
        raise RuntimeError("listener bug")

    seen = []
    store.subscribe(broken)
    store.subscribe(seen.append)

    with caplog.at_level(logging.ERROR):
        assert store.set_theme(ThemeMode.DARK) is True

    assert len(seen) == 1
    assert "listener" in caplog.text


def test_snapshot_lookup_helpers(snapshot, alice):
    assert snapshot.current_user == alice
    assert snapshot.user("bob").username == "bob"
    assert snapshot.user(None) is None
    assert snapshot.find(EntityKind.USERS, "nobody") is None
    assert snapshot.collection(EntityKind.POSTS) == ()


def test_admin_view_requires_admin(store):
    assert store.set_view(AppView.ADMIN) is False
    assert store.snapshot.session.current_view is AppView.FEED

    store.install(replace(store.snapshot, session=replace(store.snapshot.session, user_id="root")))

    assert store.set_view(AppView.ADMIN) is True
    assert store.snapshot.session.current_view is AppView.ADMIN


def test_active_chat_and_group_switch_views(store):
    store.set_active_chat("bob")
    assert store.snapshot.session.active_chat_user_id == "bob"
    assert store.snapshot.session.current_view is AppView.MESSAGES

    store.set_active_group("g1")
    assert store.snapshot.session.active_group_id == "g1"
    assert store.snapshot.session.current_view is AppView.GROUPS


def test_reset_replaces_everything(store):
    seen = []
    store.subscribe(seen.append)

    store.reset(Session(theme=ThemeMode.DARK))

    assert store.snapshot == Snapshot.empty(Session(theme=ThemeMode.DARK))
    assert store.snapshot.users == ()
    assert len(seen) == 1


def test_snapshots_are_immutable_values():
    first = Snapshot(users=(make_user("a"),))
    second = first.with_collection(EntityKind.USERS, ())

    assert first.users != second.users
    assert first != second
