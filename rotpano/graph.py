"""
Image graph: which images are connected by verified matches.

The largest connected component becomes the panorama; every other image is
reported as dropped.
"""

import logging

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from .data_structures import ImageGraph
from .errors import TopologyError

logger = logging.getLogger(__name__)


def match_score(match_set):
    """Inliers relative to what random matches would explain.

    A pair is considered geometrically consistent when this exceeds the
    confidence threshold (1.0 by default).
    """
    return match_set.num_inliers / (8.0 + 0.3 * match_set.num_matches)


def is_consistent(match_set, conf_thresh):
    return match_set.is_valid and match_score(match_set) > conf_thresh


def maximum_spanning_tree(nodes, edges):
    """
    Kruskal's algorithm on match confidence.

    Ties are broken by the (src, dst) pair so the tree is deterministic.

    Returns:
        Tuple of the MatchSets forming the tree
    """
    parent = {node: node for node in nodes}

    def find(node):
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    tree = []
    for edge in sorted(edges, key=lambda e: (-e.confidence, e.src, e.dst)):
        root_src, root_dst = find(edge.src), find(edge.dst)
        if root_src != root_dst:
            parent[max(root_src, root_dst)] = min(root_src, root_dst)
            tree.append(edge)
    return tuple(tree)


def build_image_graph(num_images, matches, conf_thresh=1.0, spanning_tree=False, dropped=None):
    """
    Build the panorama image graph from pairwise match sets.

    Args:
        num_images: Number of images in the session
        matches: MatchSets produced by the pairwise matcher
        conf_thresh: Minimum match_score for an edge to survive
        spanning_tree: Keep only a maximum spanning tree of the retained edges
        dropped: Already known reasons for dropping images (e.g. unreadable)

    Returns:
        ImageGraph of the largest connected component

    Raises:
        TopologyError: when the largest component has fewer than 2 images
    """
    dropped = dict(dropped or {})
    edges = [m for m in matches if is_consistent(m, conf_thresh)]
    rejected = [m for m in matches if m.is_valid and not is_consistent(m, conf_thresh)]
    for m in rejected:
        logger.debug("pair (%d, %d) rejected: score %.2f <= %.2f",
                     m.src, m.dst, match_score(m), conf_thresh)

    rows = [e.src for e in edges]
    cols = [e.dst for e in edges]
    adjacency = coo_matrix(
        (np.ones(len(edges)), (rows, cols)), shape=(num_images, num_images)
    ).tocsr()
    num_components, labels = connected_components(adjacency, directed=False)

    # Largest component; ties go to the component holding the lowest index
    sizes = np.bincount(labels, minlength=num_components)
    first_index = [int(np.nonzero(labels == c)[0][0]) for c in range(num_components)]
    best = min(range(num_components), key=lambda c: (-sizes[c], first_index[c]))
    nodes = tuple(int(i) for i in np.nonzero(labels == best)[0])

    connected = {e.src for e in edges} | {e.dst for e in edges}
    for index in range(num_images):
        if index in nodes:
            continue
        if index in dropped:
            continue
        if index in connected:
            dropped[index] = "not connected to the main panorama"
        else:
            dropped[index] = "no verified matches with any other image"

    kept_edges = tuple(e for e in edges if e.src in nodes and e.dst in nodes)
    if spanning_tree:
        kept_edges = maximum_spanning_tree(nodes, kept_edges)

    graph = ImageGraph(num_images=num_images, nodes=nodes, edges=kept_edges, dropped=dropped)
    logger.info("image graph: %d of %d images connected by %d edges",
                len(nodes), num_images, len(kept_edges))

    if len(nodes) < 2:
        raise TopologyError(
            "insufficient overlap: no two images could be matched together",
            graph=graph,
        )
    return graph


__all__ = ["build_image_graph", "is_consistent", "match_score", "maximum_spanning_tree"]
