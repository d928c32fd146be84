import pytest

from slinkynodes.hostlist import compress, expand


def test_expand_simple_range():
    assert expand("node[1-3]") == ["node1", "node2", "node3"]


def test_expand_keeps_zero_padding_of_start():
    assert expand("n[08-10]") == ["n08", "n09", "n10"]


def test_compress_groups_consecutive_numbers():
    assert compress(["a1", "a2", "a3", "b"]) == "a[1-3],b"


def test_expand_empty_is_empty():
    assert expand("") == []


def test_expand_plain_names_pass_through():
    names = ["login", "ctl"]
    assert expand(",".join(names)) == names


@pytest.mark.parametrize(
    "names",
    [
        ["foo-0"],
        ["foo-0", "foo-1"],
        ["node1", "node2", "node5", "node7", "node8", "gpu3"],
        ["n08", "n09", "n10", "n11"],
        ["host", "node9", "node10", "node11"],
    ],
)
def test_compress_then_expand_round_trip(names):
    assert sorted(expand(compress(names))) == sorted(names)


@pytest.mark.parametrize(
    "expression",
    ["node[1-4,7]", "a[1-2]b[3-4]", "x[001-003],y", "solo"],
)
def test_expand_then_compress_round_trip(expression):
    names = expand(expression)
    assert sorted(expand(compress(names))) == sorted(names)


def test_compress_removes_duplicates():
    names = ["n1", "n2", "n1", "n2"]
    assert sorted(expand(compress(names))) == ["n1", "n2"]


def test_expand_count_matches_ranges():
    assert len(expand("a[1-10],b[1-5,9]")) == 16


@pytest.mark.parametrize(
    "expression",
    ["node[1-", "node1-3]", "node[3-1]", "node[a-b]", "node[1,,2]", "n[[1]]"],
)
def test_expand_rejects_malformed(expression):
    with pytest.raises(ValueError):
        expand(expression)