from __future__ import annotations

from collections import deque

from .errors import CyclicDependencyError
from .graph import SchemaGraph


def creation_order(graph: SchemaGraph) -> tuple[str, ...]:
    """Order tables so that every referenced table precedes its referrers.

    Kahn's algorithm peeling from the *dependents* side: a table is ready once
    nothing left in the graph depends on it. Ready tables sit on a LIFO stack
    (seeded in registration order) and each popped table is prepended to the
    result, after which its outgoing dependency edges are removed.

    Self-references do not take part in ordering; a table can always be
    created before rows point back at it.

    Args:
        graph: Dependency graph to order.

    Returns:
        Table names, dependencies first.

    Raises:
        CyclicDependencyError: If edges remain after peeling, naming the
            tables still involved.
    """
    incoming: dict[str, list[str]] = {
        table: [other for other in graph[table].dependents if other != table] for table in graph
    }
    outgoing: dict[str, list[str]] = {
        table: [other for other in graph[table].dependencies if other != table] for table in graph
    }

    ready = [table for table in graph if not incoming[table]]
    ordered: deque[str] = deque()

    while ready:
        table = ready.pop()
        ordered.appendleft(table)

        while outgoing[table]:
            dependency = outgoing[table].pop()
            incoming[dependency].remove(table)
            if not incoming[dependency]:
                ready.append(dependency)

    if residual := [table for table in graph if incoming[table] or outgoing[table]]:
        raise CyclicDependencyError(residual)

    return tuple(ordered)
