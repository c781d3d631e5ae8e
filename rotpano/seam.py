"""
Seam estimation: decide which warped image owns each panorama pixel.

- GraphCutSeamFinder: pairwise minimum cut through the overlap, cutting
  where the two images agree (scipy.sparse.csgraph.maximum_flow)
- VoronoiSeamFinder: each pixel goes to the image whose border is farthest
- NoSeamFinder: keeps the warped masks, overlaps go to the lowest index
"""

import logging

import numpy as np
from scipy.ndimage import distance_transform_edt, sobel
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import breadth_first_order, maximum_flow

from .data_structures import SeamMasks, overlap_slices, union_roi

logger = logging.getLogger(__name__)


class SeamFinder:
    """Base class: `find(warped)` returns SeamMasks."""

    def find(self, warped):
        """
        Args:
            warped: list of WarpedImage

        Returns:
            SeamMasks
        """
        masks = self._find_masks(warped)
        return build_seam_masks(warped, masks)

    def _find_masks(self, warped):
        raise NotImplementedError


def build_seam_masks(warped, masks):
    """Assemble SeamMasks with a label canvas covering all ROIs.

    Pixels claimed by several masks get the lowest image index; pixels
    claimed by none stay -1.
    """
    x0, y0, w, h = union_roi(wi.roi for wi in warped)
    labels = np.full((h, w), -1, dtype=np.int32)
    canvas_roi = (x0, y0, w, h)
    for wi, mask in sorted(zip(warped, masks), key=lambda item: -item[0].index):
        canvas_slices, roi_slices = overlap_slices(canvas_roi, wi.roi)
        region = labels[canvas_slices]
        region[mask[roi_slices]] = wi.index
    return SeamMasks(masks=tuple(masks), corner=(x0, y0), labels=labels)


class NoSeamFinder(SeamFinder):
    """Keep every warped mask as is."""

    def _find_masks(self, warped):
        return [wi.mask.copy() for wi in warped]


class VoronoiSeamFinder(SeamFinder):
    """
    Nearest-centre labeling.

    Every covered pixel is assigned to the image in which it lies deepest,
    measured by the distance to that image's mask border. Ties go to the
    lower image index.
    """

    def _find_masks(self, warped):
        x0, y0, w, h = union_roi(wi.roi for wi in warped)
        canvas_roi = (x0, y0, w, h)
        depth = np.zeros((len(warped), h, w), dtype=np.float32)

        for k, wi in enumerate(warped):
            # Pad so the ROI edge counts as border
            padded = np.pad(wi.mask, 1, mode='constant', constant_values=False)
            dist = distance_transform_edt(padded)[1:-1, 1:-1]
            canvas_slices, roi_slices = overlap_slices(canvas_roi, wi.roi)
            depth[k][canvas_slices] = dist[roi_slices]

        # Stable ordering: ties go to the lowest image index
        order = np.argsort([wi.index for wi in warped], kind='stable')
        owner = order[np.argmax(depth[order], axis=0)]
        covered = depth.max(axis=0) > 0

        masks = []
        for k, wi in enumerate(warped):
            canvas_slices, roi_slices = overlap_slices(canvas_roi, wi.roi)
            mine = (owner[canvas_slices] == k) & covered[canvas_slices]
            masks.append(mine & wi.mask)
        return masks


class GraphCutSeamFinder(SeamFinder):
    """
    Pairwise graph-cut seams.

    For each pair of overlapping images a 4-connected grid graph is built
    over their common pixels. Edge capacities are the colour difference of
    the two images at both ends (optionally divided by the local gradient
    magnitude), so the cut prefers to pass where the images agree. Pixels
    next to an area only one image covers are tied to that image. The pixels
    lost in the cut are removed from the losing image's mask, so once all
    pairs are processed every covered pixel belongs to exactly one image.
    """

    # Capacities are integers for maximum_flow
    CAPACITY_SCALE = 100.0
    TERMINAL_CAPACITY = 2 ** 30

    def __init__(self, cost_type='color', weight_eps=0.01):
        """
        Args:
            cost_type: 'color' or 'color_grad'
            weight_eps: Added to every edge weight so flat areas still cost
        """
        if cost_type not in ('color', 'color_grad'):
            raise ValueError(f"unknown graph-cut cost type: {cost_type}")
        self.cost_type = cost_type
        self.weight_eps = weight_eps

    def _find_masks(self, warped):
        masks = [wi.mask.copy() for wi in warped]
        for a in range(len(warped)):
            for b in range(a + 1, len(warped)):
                self._cut_pair(warped[a], masks[a], warped[b], masks[b])
        return masks

    def _cut_pair(self, wa, mask_a, wb, mask_b):
        overlap = overlap_slices(wa.roi, wb.roi)
        if overlap is None:
            return

        # Window = ROI intersection grown by one pixel, so the pixels just
        # outside the overlap tell which side of it each image lies on
        ax, ay, _, _ = wa.roi
        sa, _ = overlap
        window = (ax + sa[1].start - 1, ay + sa[0].start - 1,
                  sa[1].stop - sa[1].start + 2, sa[0].stop - sa[0].start + 2)

        in_a = _in_window(mask_a, wa.roi, window)
        in_b = _in_window(mask_b, wb.roi, window)
        both = in_a & in_b
        if not np.any(both):
            return

        only_a = _touches(in_a & ~in_b) & both
        # A pixel touching both exclusive areas stays with image a
        only_b = _touches(in_b & ~in_a) & both & ~only_a

        if not np.any(only_b):
            a_wins = both
        elif not np.any(only_a):
            a_wins = np.zeros_like(both)
        else:
            img_a = _in_window(wa.image, wa.roi, window) / 255.0
            img_b = _in_window(wb.image, wb.roi, window) / 255.0
            a_wins = self._min_cut(img_a, img_b, both, only_a, only_b)

        b_wins = both & ~a_wins
        _clear(mask_b, wb.roi, window, a_wins)
        _clear(mask_a, wa.roi, window, b_wins)
        logger.debug("seam (%d, %d): %d overlap pixels, %d to %d, %d to %d",
                     wa.index, wb.index, int(both.sum()),
                     int(a_wins.sum()), wa.index, int(b_wins.sum()), wb.index)

    def _min_cut(self, img_a, img_b, both, source_linked, sink_linked):
        """Boolean map of the overlap pixels on the source (image a) side."""
        h, w = both.shape
        node_id = np.full((h, w), -1, dtype=np.int64)
        num_nodes = int(both.sum())
        node_id[both] = np.arange(num_nodes)
        source, sink = num_nodes, num_nodes + 1

        diff = np.sum((img_a - img_b) ** 2, axis=2)
        if self.cost_type == 'color_grad':
            grad = _gradient_magnitude(img_a) + _gradient_magnitude(img_b)
        else:
            grad = None

        rows, cols, caps = [], [], []
        for dy, dx in ((0, 1), (1, 0)):
            p_ok = both[:h - dy, :w - dx]
            q_ok = both[dy:, dx:]
            pair = p_ok & q_ok
            weight = diff[:h - dy, :w - dx] + diff[dy:, dx:]
            if grad is not None:
                weight = weight / (grad[:h - dy, :w - dx] + grad[dy:, dx:] + self.weight_eps)
            weight = weight + self.weight_eps
            p = node_id[:h - dy, :w - dx][pair]
            q = node_id[dy:, dx:][pair]
            cap = np.ceil(weight[pair] * self.CAPACITY_SCALE).astype(np.int64) + 1
            rows.extend([p, q])
            cols.extend([q, p])
            caps.extend([cap, cap])

        src_nodes = node_id[source_linked]
        sink_nodes = node_id[sink_linked]
        rows.extend([np.full(len(src_nodes), source), sink_nodes])
        cols.extend([src_nodes, np.full(len(sink_nodes), sink)])
        caps.extend([np.full(len(src_nodes), self.TERMINAL_CAPACITY),
                     np.full(len(sink_nodes), self.TERMINAL_CAPACITY)])

        graph = coo_matrix(
            (np.concatenate(caps).astype(np.int32),
             (np.concatenate(rows), np.concatenate(cols))),
            shape=(num_nodes + 2, num_nodes + 2),
        ).tocsr()

        flow = maximum_flow(graph, source, sink).flow
        residual = (graph - flow).tocsr()
        residual.data = (residual.data > 0).astype(np.int8)
        residual.eliminate_zeros()

        reachable = breadth_first_order(residual, source, directed=True,
                                        return_predecessors=False)
        on_source_side = np.zeros(num_nodes + 2, dtype=bool)
        on_source_side[reachable] = True

        a_wins = np.zeros_like(both)
        a_wins[both] = on_source_side[:num_nodes]
        return a_wins


def _in_window(array, roi, window):
    """Copy of `array` (laid out on `roi`) on the `window` rectangle, zero outside."""
    out = np.zeros((window[3], window[2]) + array.shape[2:], dtype=array.dtype)
    overlap = overlap_slices(window, roi)
    if overlap is not None:
        window_slices, roi_slices = overlap
        out[window_slices] = array[roi_slices]
    return out


def _clear(mask, roi, window, lost):
    """Remove the window pixels marked in `lost` from a ROI mask."""
    overlap = overlap_slices(window, roi)
    if overlap is None:
        return
    window_slices, roi_slices = overlap
    mask[roi_slices] &= ~lost[window_slices]


def _touches(region):
    """Pixels with a 4-neighbour inside `region`."""
    out = np.zeros_like(region)
    out[1:, :] |= region[:-1, :]
    out[:-1, :] |= region[1:, :]
    out[:, 1:] |= region[:, :-1]
    out[:, :-1] |= region[:, 1:]
    return out


def _gradient_magnitude(image):
    gray = image.mean(axis=2)
    return np.hypot(sobel(gray, axis=0), sobel(gray, axis=1))


def create_seam_finder(kind):
    """Seam finder by name: 'gc_color', 'gc_colorgrad', 'voronoi' or 'no'."""
    if kind == 'gc_color':
        return GraphCutSeamFinder('color')
    if kind == 'gc_colorgrad':
        return GraphCutSeamFinder('color_grad')
    if kind == 'voronoi':
        return VoronoiSeamFinder()
    if kind == 'no':
        return NoSeamFinder()
    raise ValueError(f"unknown seam finder: {kind}")


__all__ = [
    "SeamFinder",
    "GraphCutSeamFinder",
    "VoronoiSeamFinder",
    "NoSeamFinder",
    "build_seam_masks",
    "create_seam_finder",
]
