"""
Image graph: which images overlap, and how they group into panoramas.
"""

import logging

from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import breadth_first_order, connected_components, \
    minimum_spanning_tree

logger = logging.getLogger(__name__)


class ImageGraph:
    """
    Undirected graph over image indices weighted by match confidence.

    An edge is kept when the pair has at least ``min_inliers`` verified
    correspondences and a confidence above ``conf_threshold``. Connected
    components are the independently stitchable panorama groups.
    """

    def __init__(self, num_images, edges):
        """
        Args:
            num_images: Number of nodes
            edges: dict {(i, j): MatchInfo} with i < j
        """
        self.num_images = num_images
        self.edges = dict(sorted(edges.items()))

    @classmethod
    def from_matches(cls, num_images, matches, min_inliers=6, conf_threshold=1.0):
        edges = {}
        for info in matches:
            if info.num_inliers < min_inliers or info.confidence <= conf_threshold:
                continue
            key = (min(info.src, info.dst), max(info.src, info.dst))
            edges[key] = info
        logger.debug("Image graph: %d nodes, %d edges", num_images, len(edges))
        return cls(num_images, edges)

    def edge(self, i, j):
        return self.edges.get((min(i, j), max(i, j)))

    def _adjacency(self):
        n = self.num_images
        if not self.edges:
            return csr_matrix((n, n))
        rows, cols, data = [], [], []
        for (i, j) in self.edges:
            rows += [i, j]
            cols += [j, i]
            data += [1.0, 1.0]
        return csr_matrix((data, (rows, cols)), shape=(n, n))

    def components(self):
        """Connected components as sorted index lists, ordered by first index."""
        if self.num_images == 0:
            return []
        _, labels = connected_components(self._adjacency(), directed=False)
        groups = {}
        for index, label in enumerate(labels):
            groups.setdefault(label, []).append(index)
        return sorted(groups.values(), key=lambda g: g[0])

    def partition(self):
        """
        Split components into stitchable groups and dropped singletons.

        Returns:
            (groups, dropped): groups with at least two images, largest first
            (ties by first index), and the indices of isolated images.
        """
        components = self.components()
        groups = [g for g in components if len(g) >= 2]
        groups.sort(key=lambda g: (-len(g), g[0]))
        dropped = sorted(g[0] for g in components if len(g) == 1)
        return groups, dropped

    def total_confidence(self, i):
        return sum(info.confidence for key, info in self.edges.items() if i in key)

    def reference_image(self, group):
        """Image of the group with the highest total match confidence."""
        return max(group, key=lambda i: (self.total_confidence(i), -i))

    def maximum_spanning_tree(self, group):
        """
        Maximum-confidence spanning tree of one group, as BFS-ordered
        (parent, child) edges from the reference image.
        """
        group = sorted(group)
        local = {image: k for k, image in enumerate(group)}

        n = len(group)
        rows, cols, data = [], [], []
        for (i, j), info in self.edges.items():
            if i in local and j in local:
                # Decreasing in confidence, so the minimum tree is the
                # maximum-confidence one; zero would mean "no edge"
                rows.append(local[i])
                cols.append(local[j])
                data.append(1.0 / (1.0 + info.confidence))

        tree = minimum_spanning_tree(csr_matrix((data, (rows, cols)), shape=(n, n)))
        tree = tree + tree.T

        root = local[self.reference_image(group)]
        order, predecessors = breadth_first_order(tree, root, directed=False,
                                                  return_predecessors=True)
        return [(group[predecessors[k]], group[k]) for k in order[1:]]
