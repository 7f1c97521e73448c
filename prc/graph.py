from __future__ import annotations

from typing import Iterable, Mapping

from .errors import CircularDependencyError, UnknownServiceError
from .models import ServiceNode

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class DependencyGraph:
    """Build dependencies between services: name -> names it depends on.

    Services referenced only as a dependency are treated as nodes with no
    dependencies of their own. Iteration order everywhere follows the input
    mapping (then each dependency list), so orders are reproducible.
    """

    def __init__(self, dependencies: Mapping[str, Iterable[str]]):
        self._raw: dict[str, list[str]] = {name: list(deps) for name, deps in dependencies.items()}
        self._deps: dict[str, list[str]] = {}
        for name, deps in self._raw.items():
            self._deps[name] = list(dict.fromkeys(deps))
        for deps in self._raw.values():
            for dep in deps:
                self._deps.setdefault(dep, [])

    @property
    def services(self) -> list[str]:
        return list(self._deps)

    def analyze(self) -> dict[str, list[str]]:
        """Return the adjacency mapping exactly as supplied."""
        return {name: list(deps) for name, deps in self._raw.items()}

    def dependencies_of(self, name: str) -> list[str]:
        self._require(name)
        return list(self._deps[name])

    def nodes(self) -> list[ServiceNode]:
        return [ServiceNode(name=n, dependencies=frozenset(d)) for n, d in self._deps.items()]

    def independent_services(self, within: Iterable[str] | None = None) -> list[str]:
        """Services with an empty dependency list (eligible for parallel builds)."""
        names = self._ordered(within) if within is not None else list(self._deps)
        return [n for n in names if not self._deps[n]]

    def dependents_of(self, name: str) -> list[str]:
        """Every service that depends on ``name`` directly or transitively."""
        self._require(name)
        reverse: dict[str, list[str]] = {n: [] for n in self._deps}
        for n, deps in self._deps.items():
            for d in deps:
                reverse[d].append(n)

        seen: dict[str, None] = {}
        stack = list(reversed(reverse[name]))
        while stack:
            cur = stack.pop()
            if cur in seen:
                continue
            seen[cur] = None
            stack.extend(reversed(reverse[cur]))
        return [n for n in self._deps if n in seen]

    def detect_cycles(self) -> None:
        """Raise CircularDependencyError if any cycle exists in the whole graph."""
        self.topological_order()

    def topological_order(self, requested: Iterable[str] | None = None) -> list[str]:
        """Order services so that every dependency precedes its dependents.

        With ``requested``, only the requested services and their transitive
        dependencies are ordered. A cycle reachable from the ordered set
        raises CircularDependencyError; no partial order is returned.
        """
        roots = list(self._deps) if requested is None else self._ordered(requested)

        color: dict[str, int] = {n: _UNVISITED for n in self._deps}
        path: list[str] = []
        order: list[str] = []

        for root in roots:
            if color[root] != _UNVISITED:
                continue
            color[root] = _IN_PROGRESS
            path.append(root)
            # Frames of (service, unvisited dependencies); path mirrors the stack.
            stack = [(root, iter(self._deps[root]))]
            while stack:
                name, pending = stack[-1]
                for dep in pending:
                    if color[dep] == _IN_PROGRESS:
                        raise CircularDependencyError(path[path.index(dep):])
                    if color[dep] == _UNVISITED:
                        color[dep] = _IN_PROGRESS
                        path.append(dep)
                        stack.append((dep, iter(self._deps[dep])))
                        break
                else:
                    stack.pop()
                    path.pop()
                    color[name] = _DONE
                    order.append(name)
        return order

    def _require(self, name: str) -> None:
        if name not in self._deps:
            raise UnknownServiceError(name)

    def _ordered(self, names: Iterable[str]) -> list[str]:
        # Sets have no stable order; normalise to graph input order.
        wanted = set(names)
        for n in wanted:
            self._require(n)
        return [n for n in self._deps if n in wanted]
