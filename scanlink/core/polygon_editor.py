# scanlink/core/polygon_editor.py

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Optional, Tuple
from PySide6.QtCore import QObject, Signal

from scanlink.core.polygon_geometry import PolygonVertex, order_simple, same_order

MAX_HISTORY = 50


@dataclass(frozen=True)
class HistoryEntry:
    """One undoable edit."""
    kind: str                                   # "add", "delete", "move" or "state"
    vertex: Optional[PolygonVertex] = None
    vertex_id: Optional[str] = None
    old_coords: Optional[Tuple[float, float]] = None
    new_coords: Optional[Tuple[float, float]] = None
    snapshot: Tuple[PolygonVertex, ...] = ()


class PolygonEditor(QObject):
    """Owns the vertex list. Every edit publishes a fresh immutable snapshot."""

    polygon_changed = Signal(object)    # tuple of PolygonVertex

    def __init__(self, max_history=MAX_HISTORY):
        super().__init__()
        self.max_history = max_history
        self._vertices = ()
        self._history = []
        self._dragging_id = None
        self._drag_state_saved = False
        self._lock = threading.RLock()

        self.logger = logging.getLogger("SCANLINK.PolygonEditor")

    # Snapshots

    def snapshot(self):
        with self._lock:
            return self._vertices

    @property
    def history_size(self):
        with self._lock:
            return len(self._history)

    def find(self, vertex_id):
        with self._lock:
            return next((v for v in self._vertices if v.id == vertex_id), None)

    # Edits

    def add_vertex(self, latitude, longitude, vertex_id=None):
        """Add a vertex and re-order the polygon. Returns the new vertex id."""
        vertex = PolygonVertex(vertex_id or uuid.uuid4().hex, latitude, longitude)
        with self._lock:
            self._push_history(HistoryEntry("add", vertex=vertex))
            self._commit(self._vertices + (vertex,), reorder=True)
        self.logger.debug(f"Vertex added: {vertex.id} ({latitude:.7f}, {longitude:.7f})")
        return vertex.id

    def delete_vertex(self, vertex_id):
        with self._lock:
            vertex = self.find(vertex_id)
            if vertex is None:
                self.logger.warning(f"Cannot delete unknown vertex: {vertex_id}")
                return False
            self._push_history(HistoryEntry("delete", vertex=vertex))
            self._commit(tuple(v for v in self._vertices if v.id != vertex_id), reorder=True)
        return True

    def move_vertex(self, vertex_id, latitude, longitude):
        """Programmatic move; recorded as a single undo step."""
        with self._lock:
            vertex = self.find(vertex_id)
            if vertex is None:
                self.logger.warning(f"Cannot move unknown vertex: {vertex_id}")
                return False
            self._push_history(HistoryEntry(
                "move",
                vertex_id=vertex_id,
                old_coords=(vertex.latitude, vertex.longitude),
                new_coords=(latitude, longitude),
            ))
            self._commit(self._with_coords(vertex_id, latitude, longitude), reorder=True)
        return True

    def begin_drag(self, vertex_id):
        with self._lock:
            if self.find(vertex_id) is None:
                return False
            if not self._drag_state_saved:
                self._save_state()
                self._drag_state_saved = True
            self._dragging_id = vertex_id
        return True

    def drag_vertex(self, vertex_id, latitude, longitude):
        """Move a vertex mid-gesture. Ordering is left alone until the drag ends."""
        with self._lock:
            if self._dragging_id != vertex_id and not self.begin_drag(vertex_id):
                return False
            self._commit(self._with_coords(vertex_id, latitude, longitude), reorder=False)
        return True

    def end_drag(self):
        with self._lock:
            self._drag_state_saved = False
            self._dragging_id = None
            if len(self._vertices) >= 3:
                ordered = tuple(order_simple(self._vertices))
                if not same_order(self._vertices, ordered):
                    self._commit(ordered, reorder=False)

    def clear(self):
        with self._lock:
            if not self._vertices:
                return
            self._save_state()
            self._commit((), reorder=False)
        self.logger.info("Polygon cleared")

    def replace(self, vertices):
        """Load a vertex set wholesale (e.g. a catalogued flight area)."""
        with self._lock:
            self._save_state()
            self._commit(tuple(vertices), reorder=True)

    def undo(self):
        with self._lock:
            if self._dragging_id is not None:
                self._dragging_id = None
                self._drag_state_saved = False

            if not self._history:
                return False

            entry = self._history.pop()
            if entry.kind == "add":
                updated = tuple(v for v in self._vertices if v.id != entry.vertex.id)
            elif entry.kind == "delete":
                updated = self._vertices + (entry.vertex,)
            elif entry.kind == "move":
                updated = self._with_coords(entry.vertex_id, *entry.old_coords)
            else:
                updated = entry.snapshot

            self._commit(updated, reorder=entry.kind != "state")
        self.logger.debug(f"Undo: {entry.kind}")
        return True

    # Internals

    def _with_coords(self, vertex_id, latitude, longitude):
        return tuple(
            replace(v, latitude=latitude, longitude=longitude) if v.id == vertex_id else v
            for v in self._vertices
        )

    def _save_state(self):
        if self._vertices:
            self._push_history(HistoryEntry("state", snapshot=self._vertices))

    def _push_history(self, entry):
        self._history.append(entry)
        if len(self._history) > self.max_history:
            del self._history[:len(self._history) - self.max_history]

    def _commit(self, vertices, reorder):
        if reorder and len(vertices) >= 3:
            vertices = tuple(order_simple(vertices))
        self._vertices = vertices
        self.polygon_changed.emit(vertices)
