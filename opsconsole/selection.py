from typing import Callable, Dict, Iterable, List, Optional, Union

from opsconsole.utils.logging import get_logger

logger = get_logger("Selection")

Ids = Union[str, Iterable[str]]


def _as_list(ids: Ids) -> List[str]:
    return [ids] if isinstance(ids, str) else list(ids)


class BatchSelection:
    """
    Operator-held set of order ids for bulk actions.

    Only ids in the current visible set can be added. Whether the header
    checkbox is "all" or "indeterminate" is always worked out against the
    visible set as it is now, never a snapshot taken when ids were selected.

    When the view changes, selections that are no longer visible are kept
    (and reported) unless `prune_hidden` is set.
    """
    def __init__(self,
                 on_change: Optional[Callable[[List[str]], None]] = None,
                 max_selection: Optional[int] = None,
                 prune_hidden: bool = False):
        self.on_change = on_change
        self.max_selection = max_selection
        self.prune_hidden = prune_hidden
        # dict keeps selection order
        self._selected: Dict[str, None] = {}
        self._visible: List[str] = []
        self._visible_set = frozenset()
        self._anchor: Optional[str] = None

    def _changed(self, before: List[str]) -> None:
        after = self.selected_ids
        if after != before and self.on_change:
            self.on_change(after)

    def _has_room(self) -> bool:
        return self.max_selection is None or len(self._selected) < self.max_selection

    def set_visible(self, ids: Iterable[str]) -> None:
        """Replace the visible set (new page, tab, filter or search)."""
        before = self.selected_ids
        self._visible = list(dict.fromkeys(ids))
        self._visible_set = frozenset(self._visible)
        if self._anchor not in self._visible_set:
            self._anchor = None

        hidden = self.hidden_selected_ids
        if hidden:
            if self.prune_hidden:
                for order_id in hidden:
                    del self._selected[order_id]
                logger.info(f"Dropped {len(hidden)} selected orders no longer in view")
            else:
                logger.info(f"{len(hidden)} selected orders are hidden by the current view")
        self._changed(before)

    @property
    def visible_ids(self) -> List[str]:
        return list(self._visible)

    def select(self, ids: Ids) -> None:
        before = self.selected_ids
        for order_id in _as_list(ids):
            if order_id not in self._visible_set:
                logger.debug(f"Ignoring selection of {order_id}: not in the current view")
                continue
            if order_id in self._selected:
                continue
            if not self._has_room():
                logger.info(f"Selection limit of {self.max_selection} reached")
                break
            self._selected[order_id] = None
        self._changed(before)

    def deselect(self, ids: Ids) -> None:
        before = self.selected_ids
        for order_id in _as_list(ids):
            self._selected.pop(order_id, None)
        self._changed(before)

    def toggle(self, ids: Ids) -> None:
        before = self.selected_ids
        for order_id in _as_list(ids):
            if order_id in self._selected:
                del self._selected[order_id]
            elif order_id in self._visible_set and self._has_room():
                self._selected[order_id] = None
        self._changed(before)

    def select_all(self) -> None:
        """Select every visible id, up to max_selection."""
        self.select(self._visible)

    def deselect_all(self) -> None:
        before = self.selected_ids
        self._selected.clear()
        self._anchor = None
        self._changed(before)

    def select_range(self, start_id: str, end_id: str) -> None:
        """Select the visible ids between two ids, inclusive, in either direction."""
        if start_id not in self._visible_set or end_id not in self._visible_set:
            return
        a, b = self._visible.index(start_id), self._visible.index(end_id)
        lo, hi = min(a, b), max(a, b)
        self.select(self._visible[lo:hi + 1])

    def click(self, order_id: str, shift: bool = False) -> None:
        """Row checkbox click; shift extends from the previous click."""
        if shift and self._anchor is not None:
            self.select_range(self._anchor, order_id)
        else:
            self.toggle(order_id)
        if order_id in self._visible_set:
            self._anchor = order_id

    def is_selected(self, order_id: str) -> bool:
        return order_id in self._selected

    @property
    def selected_ids(self) -> List[str]:
        return list(self._selected)

    @property
    def selected_count(self) -> int:
        return len(self._selected)

    @property
    def has_selection(self) -> bool:
        return bool(self._selected)

    @property
    def visible_selected_ids(self) -> List[str]:
        return [order_id for order_id in self._selected if order_id in self._visible_set]

    @property
    def hidden_selected_ids(self) -> List[str]:
        return [order_id for order_id in self._selected if order_id not in self._visible_set]

    @property
    def is_all_selected(self) -> bool:
        return bool(self._visible) and all(order_id in self._selected for order_id in self._visible)

    @property
    def is_indeterminate(self) -> bool:
        return bool(self.visible_selected_ids) and not self.is_all_selected
