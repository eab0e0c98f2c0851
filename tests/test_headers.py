import pytest
from starlette.datastructures import MutableHeaders

from proxyai.services.headers import HOP_BY_HOP, filtered_copy, is_hop_by_hop


@pytest.mark.parametrize(
    "name",
    sorted(HOP_BY_HOP) + ["Connection", "KEEP-ALIVE", "Transfer-Encoding", "Proxy-Authorization", "TE", "Trailer"],
)
def test_hop_by_hop_headers_are_never_copied(name):
    dest = filtered_copy(MutableHeaders(), [(name, "x"), ("X-Keep", "1")])
    assert dest.getlist(name) == []
    assert dest["x-keep"] == "1"


def test_repeated_headers_keep_every_value_in_order():
    src = [
        ("Set-Cookie", "a=1"),
        ("X-Other", "o"),
        ("set-cookie", "b=2"),
        ("SET-COOKIE", "c=3"),
    ]
    dest = filtered_copy(MutableHeaders(), src)
    assert dest.getlist("set-cookie") == ["a=1", "b=2", "c=3"]
    assert dest.getlist("x-other") == ["o"]


def test_source_is_left_untouched():
    src = [("Connection", "close"), ("Accept", "*/*")]
    before = list(src)
    filtered_copy(MutableHeaders(), src)
    assert src == before


def test_values_are_appended_to_existing_destination():
    dest = MutableHeaders({"x-trace": "1"})
    filtered_copy(dest, [("X-Trace", "2")])
    assert dest.getlist("x-trace") == ["1", "2"]


def test_exclude_drops_extra_names_case_insensitively():
    dest = filtered_copy(MutableHeaders(), [("Host", "a"), ("Accept", "b")], exclude=("HOST",))
    assert "host" not in dest
    assert dest["accept"] == "b"


def test_is_hop_by_hop():
    assert is_hop_by_hop("Upgrade")
    assert is_hop_by_hop("keep-alive")
    assert not is_hop_by_hop("Content-Type")
    assert not is_hop_by_hop("Authorization")
    # RFC name is "Trailer"; the plural is an ordinary header
    assert not is_hop_by_hop("Trailers")
