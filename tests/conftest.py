"""Shared fixtures: addresses, a controllable clock and item builders."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from agora.participation.schema import Petition, Poll, Visibility

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_petition(item_id=1, visibility=Visibility.PUBLIC, allow_list=(), duration=3600, **kwargs):
    return Petition(
        id=item_id,
        title=kwargs.pop("title", "Fix the streetlights"),
        description=kwargs.pop("description", "Main street is dark at night"),
        created_at=T0,
        deadline=T0 + timedelta(seconds=duration),
        visibility=visibility,
        allow_list=list(allow_list),
        **kwargs,
    )


def make_poll(item_id=1, options=("Yes", "No"), visibility=Visibility.PUBLIC, allow_list=(),
              duration=3600, **kwargs):
    return Poll(
        id=item_id,
        title=kwargs.pop("title", "Extend library hours?"),
        options=list(options),
        created_at=T0,
        deadline=T0 + timedelta(seconds=duration),
        visibility=visibility,
        allow_list=list(allow_list),
        **kwargs,
    )


async def confirm_create(store, draft):
    """Submit a create intent and return the confirmed item id."""
    handle = await store.submit_create(draft)
    confirmation = await store.await_confirmation(handle)
    assert confirmation.confirmed, confirmation.reason
    return confirmation.item_id


async def confirm_action(store, call):
    handle = await store.submit(call)
    return await store.await_confirmation(handle)
