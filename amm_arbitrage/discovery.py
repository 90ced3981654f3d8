"""
Cyclic route discovery over the token adjacency graph.

The graph is undirected: an edge joins two tokens iff a pool connects them.
Routes are found by depth-limited depth-first search from a start token.

Hop convention: ``max_hops`` is the maximum number of swaps (edges) in a
route. A route [A, B, C, A] has 3 hops. Routes shorter than 3 hops are
never produced, so with max_hops=4 the search returns every simple 3-hop
and 4-hop cycle through the start token.
"""

from typing import Iterable, List, Optional

import networkx as nx

from .pool import Pool
from .registry import PoolRegistry
from .types import MIN_ROUTE_HOPS, Route
from .utils import get_logger, normalize_address

logger = get_logger(__name__)

DEFAULT_MAX_HOPS = 4


def build_token_graph(pools: Iterable[Pool]) -> nx.Graph:
    """
    Build the undirected token graph.

    Nodes are token addresses (with the Token under the "token" attribute),
    edges carry the connecting pool under "pool". Neighbor iteration order
    is edge insertion order, which fixes the discovery order.
    """
    graph = nx.Graph()
    for pool in pools:
        for token in (pool.token0, pool.token1):
            if token.address not in graph:
                graph.add_node(token.address, token=token)
        graph.add_edge(pool.token0.address, pool.token1.address, pool=pool)
    return graph


def find_cycles(
    graph: nx.Graph, start: str, max_hops: int = DEFAULT_MAX_HOPS
) -> List[Route]:
    """
    Every simple cycle through `start` with 3..max_hops swaps.

    Intermediate tokens are never revisited; `start` may only be entered
    again to close a cycle. Both traversal directions of a cycle are
    returned, as they price differently.

    Args:
        graph: Token graph from build_token_graph()
        start: Start token address
        max_hops: Maximum number of swaps per route

    Returns:
        Routes as tuples of token addresses, first == last, in deterministic
        adjacency order. Empty for an unknown start token.
    """
    start = normalize_address(start)
    if start not in graph or max_hops < MIN_ROUTE_HOPS:
        return []

    routes: List[Route] = []
    path: List[str] = [start]
    on_path = {start}

    def dfs(current: str) -> None:
        hops = len(path) - 1
        if hops >= max_hops:
            return
        for neighbor in graph.neighbors(current):
            if neighbor == start:
                if hops + 1 >= MIN_ROUTE_HOPS:
                    routes.append(tuple(path) + (start,))
                continue
            if neighbor in on_path:
                continue
            path.append(neighbor)
            on_path.add(neighbor)
            dfs(neighbor)
            on_path.discard(neighbor)
            path.pop()

    dfs(start)
    logger.debug("Found %d routes from %s (max %d hops)", len(routes), start, max_hops)
    return routes


def discover_routes(
    registry: PoolRegistry,
    start: str,
    max_hops: int = DEFAULT_MAX_HOPS,
    graph: Optional[nx.Graph] = None,
) -> List[Route]:
    """find_cycles() over the registry's current pool set."""
    if graph is None:
        graph = build_token_graph(registry.pools())
    return find_cycles(graph, start, max_hops)

