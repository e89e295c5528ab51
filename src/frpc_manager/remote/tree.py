"""Lazily expanded mirror of the remote directory tree."""

import threading
from dataclasses import dataclass
from queue import Empty, Queue

import structlog
from pydantic import BaseModel

from ..exceptions import AlreadyInProgress, ListError
from ..logging import get_logger
from ..utils import normalize_remote_path
from .session import RemoteEntry, RemoteSession

ROOT_PATH = "/"
PLACEHOLDER_NAME = "..."


class TreeNode(BaseModel):
    """One node of the remote tree.

    ``children`` is replaced as a whole, never mutated in place.
    """

    path: str
    name: str
    entry: RemoteEntry | None = None
    children: tuple["TreeNode", ...] = ()
    expanded: bool = False
    is_placeholder: bool = False

    @property
    def is_directory(self) -> bool:
        if self.is_placeholder:
            return False
        return self.entry is None or self.entry.is_directory

    @property
    def is_pending(self) -> bool:
        """True while only the placeholder child is present."""
        return len(self.children) == 1 and self.children[0].is_placeholder

    @classmethod
    def placeholder(cls, parent_path: str) -> "TreeNode":
        return cls(path=parent_path, name=PLACEHOLDER_NAME, is_placeholder=True)

    @classmethod
    def from_entry(cls, entry: RemoteEntry) -> "TreeNode":
        """Build a collapsed node; directories get a placeholder child."""
        children = (cls.placeholder(entry.path),) if entry.is_directory else ()
        return cls(path=entry.path, name=entry.name, entry=entry, children=children)


TreeNode.model_rebuild()


@dataclass(frozen=True)
class ExpansionResult:
    """Outcome of a background expansion."""

    path: str
    children: tuple[TreeNode, ...] = ()
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteTreeCache:
    """Serves directory expansions one level at a time against a session.

    A cache belongs to a single connection. Build a new one (or call
    :meth:`reset`) after reconnecting.
    """

    def __init__(
        self,
        session: RemoteSession,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.session = session
        self._logger = logger or get_logger(__name__)
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._generation = 0
        self._results: Queue[ExpansionResult] = Queue()
        self.root = self._new_root()
        self._nodes: dict[str, TreeNode] = {ROOT_PATH: self.root}

    @staticmethod
    def _new_root() -> TreeNode:
        return TreeNode(
            path=ROOT_PATH, name=ROOT_PATH, children=(TreeNode.placeholder(ROOT_PATH),)
        )

    def get(self, path: str) -> TreeNode | None:
        """Look up a known node by absolute path."""
        with self._lock:
            return self._nodes.get(normalize_remote_path(path))

    def expand(self, target: TreeNode | str) -> tuple[TreeNode, ...]:
        """Populate a node's children, listing the directory at most once.

        Args:
            target: Node or absolute path of a node already in the tree

        Returns:
            The node's children, in listing order

        Raises:
            KeyError: Path is not in the tree yet
            AlreadyInProgress: The same node is being expanded
            ListError: Listing failed; the node stays unexpanded
        """
        with self._lock:
            node = self._resolve(target)
            if node.expanded:
                return node.children
            if node.path in self._in_flight:
                raise AlreadyInProgress(f"Expansion of {node.path} already running")
            self._in_flight.add(node.path)
            generation = self._generation
            previous = node.children
            node.children = (TreeNode.placeholder(node.path),)

        completed = False
        try:
            entries = self.session.list_directory(node.path)
            children = tuple(TreeNode.from_entry(entry) for entry in entries)
            with self._lock:
                if generation == self._generation:
                    node.children = children
                    node.expanded = True
                    for child in children:
                        self._nodes[child.path] = child
                completed = True
        except ListError as e:
            self._logger.warning("Directory expansion failed", path=node.path, error=str(e))
            raise
        finally:
            with self._lock:
                self._in_flight.discard(node.path)
                if not completed:
                    node.children = previous

        self._logger.debug("Expanded directory", path=node.path, children=len(children))
        return children

    def invalidate(self, target: TreeNode | str) -> None:
        """Collapse a node so the next expand lists it again."""
        with self._lock:
            node = self._resolve(target)
            prefix = node.path.rstrip("/") + "/"
            stale = [p for p in self._nodes if p.startswith(prefix) and p != node.path]
            for path in stale:
                del self._nodes[path]
            node.expanded = False
            node.children = (
                (TreeNode.placeholder(node.path),) if node.is_directory else ()
            )

    def reset(self) -> None:
        """Drop every node; in-flight expansions finish without effect."""
        with self._lock:
            self._generation += 1
            self.root = self._new_root()
            self._nodes = {ROOT_PATH: self.root}

    def schedule_expand(self, target: TreeNode | str) -> threading.Thread:
        """Expand on a background thread; the outcome lands in the results queue."""
        path = target.path if isinstance(target, TreeNode) else normalize_remote_path(target)

        def worker() -> None:
            try:
                children = self.expand(target)
            except (ListError, AlreadyInProgress, KeyError) as e:
                self._results.put(ExpansionResult(path=path, error=e))
                return
            self._results.put(ExpansionResult(path=path, children=children))

        thread = threading.Thread(target=worker, name=f"expand:{path}", daemon=True)
        thread.start()
        return thread

    def poll_results(self, timeout: float | None = None) -> list[ExpansionResult]:
        """Drain finished background expansions.

        Args:
            timeout: If given, wait up to this long for the first result
        """
        results: list[ExpansionResult] = []
        if timeout is not None:
            try:
                results.append(self._results.get(timeout=timeout))
            except Empty:
                return results
        while True:
            try:
                results.append(self._results.get_nowait())
            except Empty:
                return results

    def _resolve(self, target: TreeNode | str) -> TreeNode:
        if isinstance(target, TreeNode):
            if target.is_placeholder:
                raise KeyError(f"Placeholder under {target.path} cannot be expanded")
            return target
        path = normalize_remote_path(target)
        try:
            return self._nodes[path]
        except KeyError:
            raise KeyError(f"{path} is not in the tree") from None
