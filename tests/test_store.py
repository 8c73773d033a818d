from __future__ import annotations

import json

import pytest

from lark_slack_bridge.model import ChannelMapping, UserLink
from lark_slack_bridge.store import (
    CHANNEL_MAPPINGS_KEY,
    JsonFileStore,
    MemoryStore,
    UserLinkStore,
    link_key,
    load_channel_mappings,
    save_channel_mappings,
)

LINK = UserLink(
    source_platform="slack",
    platform_a_id="U1",
    platform_b_id="ou_1",
    platform_b_credential="u-token",
    display_name="Ann",
    default_channel="oc_team",
)


@pytest.mark.anyio
async def test_json_store_persists_and_reloads(tmp_path) -> None:
    path = tmp_path / "state.json"
    store = JsonFileStore(path)
    await store.set("a", {"x": 1})
    await store.set("b", [1, 2])

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload == {"version": 1, "values": {"a": {"x": 1}, "b": [1, 2]}}

    other = JsonFileStore(path)
    assert await other.get("a") == {"x": 1}
    assert await other.keys() == ["a", "b"]

    await other.delete("a")
    assert await JsonFileStore(path).keys() == ["b"]


@pytest.mark.anyio
async def test_json_store_ignores_corrupt_file(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path)
    assert await store.get("a") is None

    path.write_text(json.dumps({"version": 99, "values": {"a": 1}}), encoding="utf-8")
    assert await JsonFileStore(path).get("a") is None


@pytest.mark.anyio
async def test_user_link_store_round_trip() -> None:
    store = MemoryStore()
    links = UserLinkStore(store)

    await links.put(LINK)

    assert await store.keys("link:") == [link_key("slack", "U1")]
    assert await links.get("slack", "U1") == LINK
    assert await links.get("lark", "U1") is None
    assert await links.list("slack") == [LINK]
    assert await links.list("lark") == []

    await links.delete("slack", "U1")
    assert await links.get("slack", "U1") is None


@pytest.mark.anyio
async def test_user_link_store_skips_bad_records() -> None:
    store = MemoryStore(
        {
            link_key("slack", "U1"): {"source_platform": "slack", "platform_a_id": "U1"},
            link_key("slack", "U2"): "garbage",
        }
    )
    links = UserLinkStore(store)
    assert await links.get("slack", "U1") is None
    assert await links.list() == []


@pytest.mark.anyio
async def test_channel_mappings_round_trip() -> None:
    store = MemoryStore()
    mapping = ChannelMapping(
        source_platform="lark",
        source_channel_id="oc_1",
        target_platform="slack",
        target_channel_id="C1",
        bidirectional=False,
    )
    await save_channel_mappings(store, [mapping])
    assert await load_channel_mappings(store) == (mapping,)


@pytest.mark.anyio
async def test_channel_mappings_skip_invalid_entries() -> None:
    store = MemoryStore(
        {
            CHANNEL_MAPPINGS_KEY: [
                {"source_platform": "teams", "source_channel_id": "x"},
                {
                    "source_platform": "slack",
                    "source_channel_id": "C1",
                    "target_platform": "lark",
                    "target_channel_id": "oc_1",
                },
            ]
        }
    )
    mappings = await load_channel_mappings(store)
    assert len(mappings) == 1
    assert mappings[0].bidirectional

    assert await load_channel_mappings(MemoryStore({CHANNEL_MAPPINGS_KEY: "bad"})) == ()
