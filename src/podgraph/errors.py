"""Error taxonomy.

Only contract violations are exceptions of podgraph's own. A factory's
exception is captured as the node's value (see node.py) and is re-raised
as-is to whoever reads it.
"""


class PodgraphError(Exception):
    pass


class UsageError(PodgraphError):
    """The caller broke the runtime's contract. Never cached, never retried."""


class CircularDependencyError(UsageError):
    def __init__(self, path) -> None:
        self.path = list(path)
        chain = " -> ".join(str(node) for node in self.path)
        super().__init__(f"Circular dependency detected: {chain}")


class ContainerDisposedError(UsageError):
    def __init__(self) -> None:
        super().__init__("Container has been disposed")
