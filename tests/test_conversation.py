# tests/test_conversation.py
import pytest

from realtime_channels.errors import InvalidArgumentError
from realtime_channels.utils.conversation import conversation_id, direct_channel_key


def test_conversation_id_is_order_independent() -> None:
    assert conversation_id("bob", "alice") == conversation_id("alice", "bob") == "alice_bob"


def test_conversation_id_compares_ids_as_strings() -> None:
    # "10" sorts before "9" lexicographically
    assert conversation_id(9, 10) == "10_9"
    assert conversation_id(10, 9) == "10_9"


@pytest.mark.parametrize("a, b", [(None, "b"), ("a", None), ("", "b"), ("a", "")])
def test_conversation_id_requires_both_ids(a, b) -> None:
    with pytest.raises(InvalidArgumentError, match="Both user IDs required"):
        conversation_id(a, b)


def test_direct_channel_key_is_prefixed_conversation_id() -> None:
    assert direct_channel_key("u2", "u1") == "direct_u1_u2"
