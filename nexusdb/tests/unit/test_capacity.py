from __future__ import annotations

import pytest

from nexusdb.core.errors import CapacityUnavailableError, ValidationError
from nexusdb.services.capacity import Node, NodePool, parse_nodes


def _pool() -> NodePool:
    return NodePool(
        [
            Node(id="node-b", address="10.0.0.2", cpu=8, memory_mb=16384),
            Node(id="node-a", address="10.0.0.1", cpu=8, memory_mb=16384),
            Node(id="node-c", address="10.0.0.3", cpu=4, memory_mb=65536),
        ]
    )


def test_ties_break_on_lowest_node_id() -> None:
    assert _pool().reserve("dep-1", cpu=1, memory_mb=1024).id == "node-a"


def test_most_free_cpu_wins_then_spreads() -> None:
    pool = _pool()
    assert pool.reserve("dep-1", cpu=2, memory_mb=1024).id == "node-a"
    # node-a now has less free cpu than node-b.
    assert pool.reserve("dep-2", cpu=2, memory_mb=1024).id == "node-b"


def test_only_nodes_with_room_are_candidates() -> None:
    pool = _pool()
    assert pool.reserve("dep-1", cpu=2, memory_mb=32768).id == "node-c"
    with pytest.raises(CapacityUnavailableError):
        pool.reserve("dep-2", cpu=16, memory_mb=1024)


def test_reserve_is_idempotent_and_release_frees_capacity() -> None:
    pool = _pool()
    first = pool.reserve("dep-1", cpu=8, memory_mb=1024)
    assert pool.reserve("dep-1", cpu=8, memory_mb=1024).id == first.id
    assert pool.free_capacity()[first.id] == (0.0, 16384 - 1024)
    assert pool.release("dep-1") is True
    assert pool.release("dep-1") is False
    assert pool.free_capacity()[first.id] == (8.0, 16384)


def test_resize_stays_on_node_and_checks_room() -> None:
    pool = _pool()
    node = pool.reserve("dep-1", cpu=2, memory_mb=1024)
    pool.resize("dep-1", cpu=6, memory_mb=3072)
    assert pool.reservation("dep-1").node_id == node.id
    assert pool.reservation("dep-1").cpu == 6
    with pytest.raises(CapacityUnavailableError):
        pool.resize("dep-1", cpu=9, memory_mb=3072)
    with pytest.raises(CapacityUnavailableError):
        pool.resize("missing", cpu=1, memory_mb=1)


def test_parse_nodes_validates_payload() -> None:
    nodes = parse_nodes('[{"id": "n1", "cpu": 4, "memory_mb": 8192}]')
    assert nodes == [Node(id="n1", address="127.0.0.1", cpu=4.0, memory_mb=8192)]
    with pytest.raises(ValidationError):
        parse_nodes("not json")
    with pytest.raises(ValidationError):
        parse_nodes("[]")
    with pytest.raises(ValidationError):
        parse_nodes('[{"id": "n1"}]')
