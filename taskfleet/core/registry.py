"""
Central registry of agent nodes.

Launch workers, the retention controller and the pool maintainer run on
different threads, so every access goes through a re-entrant lock.  Node
records are persisted as JSON when a ``state_path`` is configured so that a
restarted controller does not launch an already-launched node again.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from taskfleet.core.entities.agent import AgentNode

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Thread-safe map of node name to :class:`AgentNode`."""

    def __init__(self, name: str = "taskfleet", state_path: Optional[str] = None):
        self.name = name
        self._nodes: Dict[str, AgentNode] = {}
        self._lock = threading.RLock()
        self._state_path = Path(state_path).expanduser() if state_path else None
        self._load_state()

    # ------------------------------------------------------------------
    # Persistence helpers

    def _state_file(self) -> Optional[Path]:
        if self._state_path is None:
            return None
        self._state_path.mkdir(parents=True, exist_ok=True)
        return self._state_path / f"{self.name}-nodes.json"

    def save(self, node: Optional[AgentNode] = None) -> None:
        """Persist every record; ``node`` only names the record that changed, for logging."""
        state_file = self._state_file()
        if state_file is None:
            return
        with self._lock:
            payload = {"nodes": [record.to_dict() for record in self._nodes.values()]}
            tmp_file = state_file.with_suffix(".tmp")
            tmp_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_file, state_file)
        if node is not None:
            logger.debug("节点 %s 状态已持久化到 %s", node.name, state_file)

    def _load_state(self) -> None:
        state_file = self._state_file()
        if state_file is None or not state_file.exists():
            return
        try:
            data = json.loads(state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("节点状态恢复失败: 读取文件错误")
            return

        restored: Dict[str, AgentNode] = {}
        try:
            for item in data.get("nodes", []):
                node = AgentNode.from_dict(item)
                if not node.is_terminated:
                    restored[node.name] = node
        except (KeyError, TypeError, ValueError):
            logger.exception("节点状态恢复失败: 数据格式不正确")
            return
        self._nodes = restored
        logger.info("节点状态从 %s 恢复: %d nodes", state_file, len(self._nodes))

    # ------------------------------------------------------------------
    # Record operations

    def register(self, node: AgentNode) -> None:
        with self._lock:
            if node.name in self._nodes:
                raise ValueError(f"Node '{node.name}' already registered")
            self._nodes[node.name] = node
        logger.info("Node %s registered (template=%s, pool=%s)", node.name, node.template_name, node.pool_id)

    def get(self, name: str) -> Optional[AgentNode]:
        with self._lock:
            return self._nodes.get(name)

    def remove(self, name: str) -> Optional[AgentNode]:
        with self._lock:
            node = self._nodes.pop(name, None)
        if node is not None:
            logger.info("Node %s deregistered", name)
        return node

    def list_nodes(self, predicate: Optional[Callable[[AgentNode], bool]] = None) -> List[AgentNode]:
        with self._lock:
            nodes = list(self._nodes.values())
        if predicate is None:
            return nodes
        return [node for node in nodes if predicate(node)]

    def online_count(self, label: str) -> int:
        """Number of online nodes whose label set contains ``label``."""
        return len(self.list_nodes(lambda node: node.is_online and label in node.labels))

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)
