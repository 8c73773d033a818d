from __future__ import annotations

from lark_slack_bridge.mentions import (
    LarkMentionCodec,
    SlackMentionCodec,
    build_user_index,
    collapse_whitespace,
    lark_system_mentions,
    parse_lark_mentions,
    parse_slack_mentions,
)
from lark_slack_bridge.model import MentionRef, RemoteUser

lark = LarkMentionCodec()
slack = SlackMentionCodec()


def test_lark_decode_renames_human_mention() -> None:
    mentions = parse_lark_mentions(
        [{"key": "@_user_1", "name": "A", "id": {"user_id": "u1"}}]
    )
    assert lark.decode("@_user_1 hi", mentions) == "@A hi"


def test_lark_decode_keeps_name_that_looks_like_a_key() -> None:
    mentions = parse_lark_mentions(
        [{"key": "@_user_1", "name": "_ops", "id": {"user_id": "u1"}}]
    )
    assert lark.decode("@_user_1 hi", mentions) == "@_ops hi"
    assert lark.decode("@_user_1 hi @_all", mentions) == "@_ops hi"


def test_lark_decode_removes_mention_without_user_id() -> None:
    for identity in ({"user_id": ""}, {}, None):
        mentions = parse_lark_mentions(
            [{"key": "@_user_1", "name": "Helper Bot", "id": identity}]
        )
        assert mentions[0].is_automated_account
        assert lark.decode("@_user_1 please run", mentions) == "please run"


def test_lark_decode_only_system_tokens_is_empty() -> None:
    text = "@_user_1  @_all \n @_user_2"
    assert lark.decode(text, lark_system_mentions(text)) == ""


def test_lark_decode_collapses_gaps_left_by_removal() -> None:
    mentions = (MentionRef(raw_token="@_user_1", is_automated_account=True),)
    assert lark.decode("hello @_user_1 world", mentions) == "hello world"


def test_lark_decode_does_not_match_token_prefix() -> None:
    mentions = parse_lark_mentions(
        [
            {"key": "@_user_1", "name": "Ann", "id": {"user_id": "u1"}},
            {"key": "@_user_10", "name": "Ben", "id": {"user_id": "u10"}},
        ]
    )
    assert lark.decode("@_user_10 and @_user_1", mentions) == "@Ben and @Ann"


def test_decode_without_mentions_returns_text_unmodified() -> None:
    text = "  spaced   out @_user_1 "
    assert lark.decode(text, []) == text
    assert lark.decode(text, None) == text
    assert slack.decode(text, ()) == text


def test_decode_is_idempotent() -> None:
    mentions = parse_lark_mentions(
        [
            {"key": "@_user_1", "name": "A", "id": {"user_id": "u1"}},
            {"key": "@_user_2", "name": "Bot", "id": {}},
        ]
    )
    once = lark.decode("@_user_1  hi @_user_2 there", mentions)
    assert lark.decode(once, mentions) == once

    slack_text = "<@U1|ann> hi <!here>"
    slack_mentions = parse_slack_mentions(slack_text)
    slack_once = slack.decode(slack_text, slack_mentions)
    assert slack_once == "@ann hi"
    assert slack.decode(slack_once, slack_mentions) == slack_once


def test_collapse_whitespace_keeps_line_breaks() -> None:
    assert collapse_whitespace("  a   b \n  c  ") == "a b\nc"


def test_slack_decode_uses_resolved_name() -> None:
    mentions = (
        MentionRef(raw_token="<@U1>", resolved_user_id="U1", resolved_display_name="Ann"),
        MentionRef(raw_token="<!channel>", is_automated_account=True),
    )
    assert slack.decode("<!channel> ping <@U1>", mentions) == "ping @Ann"


def test_slack_decode_falls_back_to_user_id() -> None:
    text = "hey <@U99>"
    assert slack.decode(text, parse_slack_mentions(text)) == "hey @U99"


def test_parse_slack_mentions_dedupes_tokens() -> None:
    refs = parse_slack_mentions("<@U1> <@U1|ann> <!here>")
    assert [ref.raw_token for ref in refs] == ["<@U1>", "<@U1|ann>", "<!here>"]
    assert refs[1].resolved_display_name == "ann"
    assert refs[2].is_automated_account
    assert refs[2].resolved_user_id is None


def test_encode_rewrites_known_names() -> None:
    index = build_user_index(
        [
            RemoteUser(id="U1", name="ann", display_name="Ann Lee", real_name="Ann"),
            RemoteUser(id="U2", name="bot", is_bot=True),
        ]
    )
    assert slack.encode("hi @ann and @Bot and @nobody", index) == (
        "hi <@U1> and @Bot and @nobody"
    )


def test_lark_encode_renders_at_tag() -> None:
    index = {"ann": "ou_1"}
    assert lark.encode("ping @Ann", index) == 'ping <at user_id="ou_1">Ann</at>'


def test_encode_matches_cjk_names() -> None:
    index = build_user_index(
        [
            RemoteUser(id="ou_1", display_name="田中"),
            RemoteUser(id="ou_2", display_name="さくら"),
            RemoteUser(id="ou_3", display_name="カタカナ"),
        ]
    )
    encoded = lark.encode("@田中 @さくら @カタカナ", index)
    assert encoded == (
        '<at user_id="ou_1">田中</at> '
        '<at user_id="ou_2">さくら</at> '
        '<at user_id="ou_3">カタカナ</at>'
    )


def test_encode_matches_email_local_part() -> None:
    index = {"example": "U7"}
    assert slack.encode("mail test@example.com", index) == "mail test<@U7>.com"


def test_encode_with_empty_index_is_noop() -> None:
    assert slack.encode("hi @ann", {}) == "hi @ann"


def test_user_index_skips_deleted_users() -> None:
    index = build_user_index([RemoteUser(id="U1", name="gone", is_deleted=True)])
    assert index == {}
