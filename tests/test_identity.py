from __future__ import annotations

import pytest

from lark_slack_bridge.identity import IdentityResolver, UserDirectory, default_prefix
from lark_slack_bridge.model import (
    BridgeMessage,
    DefaultIdentity,
    LinkedIdentity,
    RemoteUser,
    UserLink,
)
from lark_slack_bridge.store import MemoryStore, UserLinkStore
from tests.fakes import FakeClient, FakeClock


def _message(**kwargs) -> BridgeMessage:
    values = {
        "source_platform": "slack",
        "source_chat_id": "C1",
        "sender_id": "U1",
        "raw_text": "hi",
        "timestamp": 0.0,
    }
    values.update(kwargs)
    return BridgeMessage(**values)


def test_default_prefix() -> None:
    assert default_prefix(_message(sender_display_name="Ann")) == "[Slack: Ann]"
    assert default_prefix(_message()) == "[Slack: U1]"
    assert default_prefix(_message(source_platform="lark", sender_id="")) == "[Lark: Unknown]"


@pytest.mark.anyio
async def test_linked_sender_gets_credential() -> None:
    links = UserLinkStore(MemoryStore())
    await links.put(
        UserLink(
            source_platform="slack",
            platform_a_id="U1",
            platform_b_id="ou_1",
            platform_b_credential="u-personal",
            display_name="Ann",
        )
    )
    resolver = IdentityResolver(links)

    send_as = await resolver.resolve(_message(), "lark")

    assert send_as == LinkedIdentity(credential="u-personal", display_name="Ann")


@pytest.mark.anyio
async def test_unlinked_sender_gets_prefix() -> None:
    resolver = IdentityResolver(UserLinkStore(MemoryStore()))
    send_as = await resolver.resolve(_message(sender_display_name="Ann"), "lark")
    assert send_as == DefaultIdentity(display_prefix="[Slack: Ann]")


@pytest.mark.anyio
async def test_link_lookups_are_cached_until_forgotten() -> None:
    clock = FakeClock()
    store = MemoryStore()
    links = UserLinkStore(store)
    resolver = IdentityResolver(links, ttl_s=60, clock=clock)

    assert await resolver.link_for(_message()) is None
    await links.put(
        UserLink(
            source_platform="slack",
            platform_a_id="U1",
            platform_b_id="ou_1",
            platform_b_credential="u-personal",
        )
    )
    assert await resolver.link_for(_message()) is None

    resolver.forget("slack", "U1")
    link = await resolver.link_for(_message())
    assert link is not None
    assert link.platform_b_id == "ou_1"


class BrokenStore(MemoryStore):
    async def get(self, key: str):
        raise OSError("disk gone")


@pytest.mark.anyio
async def test_link_store_failure_degrades_to_default() -> None:
    resolver = IdentityResolver(UserLinkStore(BrokenStore()))
    send_as = await resolver.resolve(_message(), "lark")
    assert isinstance(send_as, DefaultIdentity)


@pytest.mark.anyio
async def test_user_directory_lookup_and_index() -> None:
    client = FakeClient(
        platform="lark",
        users=[
            RemoteUser(id="ou_1", display_name="Ann", name="ann.lee"),
            RemoteUser(id="ou_2", name="ghost", is_deleted=True),
        ],
    )
    users = UserDirectory(client)

    assert await users.display_name("ou_1") == "Ann"
    assert await users.display_name("ou_1") == "Ann"
    assert client.user_calls == ["ou_1"]
    assert await users.lookup("missing") is None
    assert await users.index() == {"ann": "ou_1", "ann.lee": "ou_1"}


class FailingUsersClient(FakeClient):
    async def resolve_user(self, user_id: str):
        raise RuntimeError("lookup failed")

    async def list_users(self, workspace_id: str):
        raise RuntimeError("listing failed")


@pytest.mark.anyio
async def test_user_directory_failures_are_not_fatal() -> None:
    users = UserDirectory(FailingUsersClient(platform="slack"))
    assert await users.lookup("U1") is None
    assert await users.index() == {}
