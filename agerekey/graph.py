"""Ordering of secrets that have to be generated.

The graph spans all hosts: a generator may depend on a secret declared by
another host. Only generated secrets whose file does not exist yet are
nodes. Everything else a generator depends on is an existing leaf that
can be decrypted right away.
"""

from pathlib import Path

from .entities import GeneratedSecret, Inventory, SecretRef
from .errors import CyclicDependency


WHITE, GREY, BLACK = range(3)


class DependencyGraph:
    """Secrets to generate and the secrets each one waits for."""

    def __init__(self):
        # node -> nodes that must be generated before it
        self.edges: dict[SecretRef, list[SecretRef]] = {}

    @classmethod
    def from_inventory(cls, inventory: Inventory) -> "DependencyGraph":
        """Build the graph of all secrets that are missing and generated.

        Secrets on several hosts sharing a file are generated once, by the
        first one declared.
        """
        graph = cls()
        canonical: dict[Path, SecretRef] = {}
        pending: dict[SecretRef, GeneratedSecret] = {}
        for ref in inventory.refs():
            secret = inventory.secret(ref)
            if not isinstance(secret, GeneratedSecret):
                continue
            if secret.rekey_file.exists():
                continue
            if secret.rekey_file in canonical:
                continue
            canonical[secret.rekey_file] = ref
            pending[ref] = secret

        for ref, secret in pending.items():
            deps: list[SecretRef] = []
            for dep in secret.dependencies:
                dep_secret = inventory.secret(dep)
                node = canonical.get(getattr(dep_secret, "rekey_file", None))
                if node is not None and node not in deps:
                    deps.append(node)
            graph.add(ref, deps)
        return graph

    def add(self, node: SecretRef, dependencies: list[SecretRef] | None = None):
        self.edges.setdefault(node, [])
        for dep in dependencies or []:
            self.edges.setdefault(dep, [])
            if dep not in self.edges[node]:
                self.edges[node].append(dep)

    def dependencies(self, node: SecretRef) -> list[SecretRef]:
        return self.edges[node]

    def __contains__(self, node: SecretRef) -> bool:
        return node in self.edges

    def __len__(self) -> int:
        return len(self.edges)

    def order(self) -> list[SecretRef]:
        """Topological order: every node comes after its dependencies.

        Raises:
            CyclicDependency: naming the secrets on the cycle
        """
        color = {node: WHITE for node in self.edges}
        path: list[SecretRef] = []
        result: list[SecretRef] = []

        def visit(node: SecretRef) -> None:
            color[node] = GREY
            path.append(node)
            for dep in self.edges[node]:
                if color[dep] == GREY:
                    start = path.index(dep)
                    raise CyclicDependency(path[start:] + [dep])
                if color[dep] == WHITE:
                    visit(dep)
            path.pop()
            color[node] = BLACK
            result.append(node)

        for node in self.edges:
            if color[node] == WHITE:
                visit(node)
        return result


def resolve(inventory: Inventory) -> list[SecretRef]:
    """The order in which missing secrets have to be generated."""
    return DependencyGraph.from_inventory(inventory).order()
