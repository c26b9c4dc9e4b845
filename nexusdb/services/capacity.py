from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import threading

from nexusdb.core.config import Settings
from nexusdb.core.errors import CapacityUnavailableError, ValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Node:
    id: str
    address: str
    cpu: float
    memory_mb: int


@dataclass(frozen=True)
class Reservation:
    node_id: str
    cpu: float
    memory_mb: int


def parse_nodes(raw: str) -> list[Node]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"nodes_json is not valid JSON: {exc}") from exc
    if not isinstance(payload, list) or not payload:
        raise ValidationError("nodes_json must be a non-empty list")
    nodes: list[Node] = []
    for item in payload:
        try:
            nodes.append(
                Node(
                    id=str(item["id"]),
                    address=str(item.get("address", "127.0.0.1")),
                    cpu=float(item["cpu"]),
                    memory_mb=int(item["memory_mb"]),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"invalid node entry: {item!r}") from exc
    return nodes


class NodePool:
    """Capacity bookkeeping across candidate nodes.

    Selection is a bin-packing heuristic: the eligible node with the most free
    cpu wins, then the most free memory, then the lowest node id.
    """

    def __init__(self, nodes: list[Node]) -> None:
        self._nodes = {node.id: node for node in nodes}
        self._reservations: dict[str, Reservation] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "NodePool":
        return cls(parse_nodes(settings.nodes_json))

    def get(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def nodes(self) -> list[Node]:
        return sorted(self._nodes.values(), key=lambda node: node.id)

    def _free(self, node: Node) -> tuple[float, int]:
        used_cpu = 0.0
        used_memory = 0
        for reservation in self._reservations.values():
            if reservation.node_id == node.id:
                used_cpu += reservation.cpu
                used_memory += reservation.memory_mb
        return node.cpu - used_cpu, node.memory_mb - used_memory

    def free_capacity(self) -> dict[str, tuple[float, int]]:
        with self._lock:
            return {node.id: self._free(node) for node in self.nodes()}

    def reserve(self, deployment_id: str, *, cpu: float, memory_mb: int) -> Node:
        # Idempotent per deployment so a retried stage keeps its original placement.
        with self._lock:
            existing = self._reservations.get(deployment_id)
            if existing is not None:
                return self._nodes[existing.node_id]
            candidates: list[tuple[float, int, Node]] = []
            for node in self._nodes.values():
                free_cpu, free_memory = self._free(node)
                if free_cpu >= cpu and free_memory >= memory_mb:
                    candidates.append((free_cpu, free_memory, node))
            if not candidates:
                raise CapacityUnavailableError(
                    f"no node has {cpu} cpu and {memory_mb}MB free for deployment {deployment_id}"
                )
            candidates.sort(key=lambda item: (-item[0], -item[1], item[2].id))
            chosen = candidates[0][2]
            self._reservations[deployment_id] = Reservation(node_id=chosen.id, cpu=cpu, memory_mb=memory_mb)
        logger.info("capacity_reserved deployment_id=%s node_id=%s cpu=%s memory_mb=%s", deployment_id, chosen.id, cpu, memory_mb)
        return chosen

    def resize(self, deployment_id: str, *, cpu: float, memory_mb: int) -> None:
        # Scaling changes the footprint in place on the node already chosen.
        with self._lock:
            existing = self._reservations.get(deployment_id)
            if existing is None:
                raise CapacityUnavailableError(f"deployment {deployment_id} holds no reservation")
            node = self._nodes[existing.node_id]
            free_cpu, free_memory = self._free(node)
            if cpu - existing.cpu > free_cpu or memory_mb - existing.memory_mb > free_memory:
                raise CapacityUnavailableError(f"node {node.id} cannot fit {cpu} cpu and {memory_mb}MB")
            self._reservations[deployment_id] = Reservation(node_id=node.id, cpu=cpu, memory_mb=memory_mb)

    def adopt(self, deployment_id: str, node_id: str, *, cpu: float, memory_mb: int) -> None:
        # Rebuild reservations for live deployments after a restart; capacity is not re-checked.
        with self._lock:
            if node_id in self._nodes:
                self._reservations[deployment_id] = Reservation(node_id=node_id, cpu=cpu, memory_mb=memory_mb)

    def release(self, deployment_id: str) -> bool:
        with self._lock:
            released = self._reservations.pop(deployment_id, None)
        if released is not None:
            logger.info("capacity_released deployment_id=%s node_id=%s", deployment_id, released.node_id)
        return released is not None

    def reservation(self, deployment_id: str) -> Reservation | None:
        with self._lock:
            return self._reservations.get(deployment_id)
