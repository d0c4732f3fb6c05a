"""
Dependency scheduling for services: startup layers and shutdown order.
"""
from typing import Dict, Iterable, List, Mapping, Set, Union

from ..errors import CycleError
from ..MODELS.service_definition import ServiceDescriptor

ServiceGraph = Mapping[str, Union[ServiceDescriptor, Iterable[str]]]


def _edges(services: ServiceGraph) -> Dict[str, Set[str]]:
    """
    Dependency sets restricted to the given services.
    Accepts descriptors or plain name -> dependency-names mappings.
    """
    edges = {}
    for name, svc in services.items():
        deps = svc.depends_on if isinstance(svc, ServiceDescriptor) else svc
        edges[name] = {d for d in deps if d in services}
    return edges


class DependencyScheduler:
    """
    Groups services into layers that can start concurrently, using Kahn's algorithm.
    """
    def schedule(self, services: ServiceGraph) -> List[List[str]]:
        """
        Computes startup layers. Every service lands in a strictly later layer than all
        of its dependencies; within a layer names are sorted ascending.

        :param services: Service name to descriptor (or dependency names).
        :return: Ordered layers of service names.
        :raises CycleError: If the remaining services can never become free.
        """
        remaining = _edges(services)
        layers = []
        placed: Set[str] = set()

        while remaining:
            layer = sorted(name for name, deps in remaining.items() if deps <= placed)
            if not layer:
                raise CycleError(self._cycle_members(remaining))
            layers.append(layer)
            placed.update(layer)
            for name in layer:
                del remaining[name]

        return layers

    def resolve_order(self, services: ServiceGraph) -> List[str]:
        """
        Flattened startup order.
        """
        return [name for layer in self.schedule(services) for name in layer]

    def shutdown_order(self, services: ServiceGraph) -> List[str]:
        """
        Dependents stop before the services they depend on.
        """
        return list(reversed(self.resolve_order(services)))

    def dependents_of(self, services: ServiceGraph, name: str) -> Set[str]:
        """
        Every service that depends on ``name``, directly or transitively.
        """
        reverse: Dict[str, Set[str]] = {n: set() for n in services}
        for svc, deps in _edges(services).items():
            for dep in deps:
                reverse[dep].add(svc)

        found: Set[str] = set()
        stack = [name]
        while stack:
            for dependent in reverse.get(stack.pop(), ()):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def with_dependencies(self, services: ServiceGraph, names: Iterable[str]) -> Set[str]:
        """
        The given services plus everything they depend on, transitively.
        """
        edges = _edges(services)
        found: Set[str] = set()
        stack = [n for n in names if n in services]
        while stack:
            name = stack.pop()
            if name in found:
                continue
            found.add(name)
            stack.extend(edges[name] - found)
        return found

    @staticmethod
    def _cycle_members(remaining: Dict[str, Set[str]]) -> List[str]:
        """
        Trims services that merely wait on a cycle, leaving the cycle itself.
        """
        stuck = {name: set(deps) & set(remaining) for name, deps in remaining.items()}
        changed = True
        while changed:
            changed = False
            depended = set().union(*stuck.values()) if stuck else set()
            for name in list(stuck):
                if name not in depended:
                    del stuck[name]
                    changed = True
            for name in stuck:
                stuck[name] &= set(stuck)
        return sorted(stuck) or sorted(remaining)
