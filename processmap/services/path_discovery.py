"""Path discovery over a process map's step graph.

The graph is the union of two edge sources:
  - dependency edges: every ``dep`` in ``step["dependencies"]`` gives dep → step
  - explicit edges:   ``{"source", "target", "label"}`` entries in the map's edges

Paths are simple (a node appears at most once) and run from an entry node
(no incoming edge) to an exit node (no outgoing edge). Enumeration is
depth-first and stops at ``max_paths``; the result is deterministic for a
given input: entry nodes in step order, successors in insertion order.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_MAX_PATHS = 50


def path_hash(step_ids: list[str]) -> str:
    """Stable short hash identifying a path by its step sequence."""
    joined = "->".join(step_ids)
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()[:16]


@dataclass
class ScenarioPath:
    """One route through the workflow graph."""

    step_ids: list[str]
    branch_choices: list[dict] = field(default_factory=list)

    @property
    def path_hash(self) -> str:
        return path_hash(self.step_ids)

    def edges(self) -> list[tuple[str, str]]:
        return list(zip(self.step_ids, self.step_ids[1:]))

    def to_dict(self) -> dict:
        return {
            "step_ids": list(self.step_ids),
            "path_hash": self.path_hash,
            "branch_choices": [dict(c) for c in self.branch_choices],
        }


@dataclass
class DiscoveryResult:
    paths: list[ScenarioPath]
    truncated: bool
    max_paths: int

    def to_dict(self) -> dict:
        return {
            "paths": [p.to_dict() for p in self.paths],
            "total_paths": len(self.paths),
            "truncated": self.truncated,
            "max_paths": self.max_paths,
        }


class PathDiscovery:
    """Enumerates simple paths and branch points of a workflow graph."""

    def __init__(self, steps: list[dict], edges: list[dict] | None = None,
                 max_paths: int = DEFAULT_MAX_PATHS) -> None:
        if max_paths < 1:
            raise ValueError("max_paths must be >= 1")
        self.max_paths = max_paths
        self.node_ids: list[str] = [s["id"] for s in steps if s.get("id")]
        known = set(self.node_ids)

        self._successors: dict[str, list[str]] = {n: [] for n in self.node_ids}
        self._predecessors: dict[str, list[str]] = {n: [] for n in self.node_ids}
        self._labels: dict[tuple[str, str], str | None] = {}

        for step in steps:
            target = step.get("id")
            if not target:
                continue
            for dep in step.get("dependencies") or []:
                if dep not in known:
                    logger.warning("Step %s depends on unknown step %s — ignored", target, dep)
                    continue
                self._add_edge(dep, target, None)

        for edge in edges or []:
            source, target = edge.get("source"), edge.get("target")
            if source not in known or target not in known:
                logger.warning("Edge %s -> %s references an unknown step — ignored", source, target)
                continue
            self._add_edge(source, target, edge.get("label"))

    def _add_edge(self, source: str, target: str, label: str | None) -> None:
        if target in self._successors[source]:
            # Keep the first edge, but let an explicit label fill in a missing one
            if label and not self._labels.get((source, target)):
                self._labels[(source, target)] = label
            return
        self._successors[source].append(target)
        self._predecessors[target].append(source)
        self._labels[(source, target)] = label

    # ── Graph shape ───────────────────────────────────────────────────

    def successors(self, node_id: str) -> list[str]:
        return list(self._successors.get(node_id, []))

    def entry_nodes(self) -> list[str]:
        return [n for n in self.node_ids if not self._predecessors[n]]

    def exit_nodes(self) -> list[str]:
        return [n for n in self.node_ids if not self._successors[n]]

    def branch_points(self) -> list[str]:
        return [n for n in self.node_ids if len(self._successors[n]) > 1]

    def branches(self) -> list[dict]:
        """Every edge leaving a branch point."""
        result = []
        for node in self.branch_points():
            for target in self._successors[node]:
                result.append({
                    "from": node,
                    "to": target,
                    "label": self._labels.get((node, target)),
                })
        return result

    # ── Enumeration ───────────────────────────────────────────────────

    def discover_paths(self) -> DiscoveryResult:
        paths: list[ScenarioPath] = []
        truncated = False
        entries = self.entry_nodes()

        # A graph made only of cycles has no entry node; start from the first step
        if not entries and self.node_ids:
            entries = [self.node_ids[0]]

        for entry in entries:
            found = len(paths)
            if not self._walk(entry, [entry], {entry}, paths, at_cycles=False):
                truncated = True
                break
            # No exit reachable from this entry: end its paths where cycles close
            if len(paths) == found and not self._walk(entry, [entry], {entry}, paths, at_cycles=True):
                truncated = True
                break

        logger.debug(
            "Discovered %d paths (entries=%d, truncated=%s)",
            len(paths), len(entries), truncated,
        )
        return DiscoveryResult(paths=paths, truncated=truncated, max_paths=self.max_paths)

    def _walk(self, node: str, trail: list[str], on_trail: set[str],
              paths: list[ScenarioPath], at_cycles: bool) -> bool:
        """DFS from ``node``. Returns False once the path cap is hit.

        Paths end at exit nodes; with ``at_cycles`` they also end where
        every successor is already on the trail.
        """
        open_successors = [s for s in self._successors[node] if s not in on_trail]

        if not open_successors:
            if self._successors[node] and not at_cycles:
                return True
            if len(paths) >= self.max_paths:
                return False
            paths.append(ScenarioPath(step_ids=list(trail),
                                      branch_choices=self._branch_choices(trail)))
            return True

        for succ in open_successors:
            trail.append(succ)
            on_trail.add(succ)
            keep_going = self._walk(succ, trail, on_trail, paths, at_cycles)
            trail.pop()
            on_trail.discard(succ)
            if not keep_going:
                return False
        return True

    def _branch_choices(self, trail: list[str]) -> list[dict]:
        choices = []
        for source, target in zip(trail, trail[1:]):
            if len(self._successors[source]) > 1:
                choices.append({
                    "from": source,
                    "to": target,
                    "label": self._labels.get((source, target)),
                })
        return choices
