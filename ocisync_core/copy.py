"""Graph copy between content stores.

The engine walks the manifest graph below a root descriptor, prunes every
node the destination already holds, and moves the rest through a bounded
thread pool. All bookkeeping except the dedup memo runs on the calling
thread; workers only fetch, verify and push. A manifest is pushed once every
child it references has landed, so the destination never holds a manifest
with dangling children, and the root is tagged only after the whole graph is
in place.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable

from .content.storage import ReferrerLister, Target, store_name
from .descriptor import Descriptor, is_digest, verify_content
from .errors import AlreadyExistsError, CopyCancelledError, CopyError, OciError, UnsupportedError
from .manifest import decode_manifest
from .mediatype import is_manifest

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_MAX_METADATA_BYTES = 4 * 1024 * 1024
_POLL_SECONDS = 0.05

Hook = Callable[[Descriptor], None]


@dataclass(frozen=True)
class CopyOptions:
    concurrency: int = DEFAULT_CONCURRENCY
    skip_existing_root: bool = True
    follow_subject: bool = False
    max_metadata_bytes: int = DEFAULT_MAX_METADATA_BYTES
    pre_copy: Hook | None = None
    post_copy: Hook | None = None
    on_copy_skipped: Hook | None = None
    cancel_event: threading.Event | None = None


@dataclass(frozen=True)
class ExtendedCopyOptions(CopyOptions):
    # 0 follows referrers of referrers without limit
    depth: int = 0
    artifact_type: str | None = None


@dataclass(eq=False)
class _Node:
    descriptor: Descriptor
    data: bytes | None = None
    pending: int = 0
    done: bool = False
    parents: list[_Node] = field(default_factory=list)


def copy(
    source: Target,
    src_reference: str,
    destination: Target,
    dst_reference: str = "",
    options: CopyOptions | None = None,
) -> Descriptor:
    """Copy the graph behind ``src_reference`` and tag it at the destination.

    ``dst_reference`` defaults to the tag part of ``src_reference``; a digest
    reference means no tag is written.
    """
    options = options or CopyOptions()
    try:
        root = source.resolve(src_reference)
    except OciError as exc:
        raise exc.with_context(store=store_name(source))

    if options.skip_existing_root and destination.exists(root):
        logger.debug("copy root already present digest=%s", root.digest)
        if options.on_copy_skipped is not None:
            options.on_copy_skipped(root)
    else:
        copy_graph(source, destination, root, options)

    tag = dst_reference or _tag_of(src_reference)
    if tag and not is_digest(tag):
        try:
            destination.tag(root, tag)
        except OciError as exc:
            raise exc.with_context(descriptor=root, store=store_name(destination))
        logger.debug("copy tagged root digest=%s tag=%s", root.digest, tag)
    return root


def copy_graph(
    source: Target,
    destination: Target,
    root: Descriptor,
    options: CopyOptions | None = None,
) -> None:
    _CopySession(source, destination, options or CopyOptions()).run(root)


def extended_copy(
    source: Target,
    src_reference: str,
    destination: Target,
    dst_reference: str = "",
    options: ExtendedCopyOptions | None = None,
) -> Descriptor:
    """Copy a graph plus every artifact that refers to it through ``subject``.

    Referrers are discovered on the source and copied after their subject.
    """
    options = options or ExtendedCopyOptions()
    if not isinstance(source, ReferrerLister):
        raise UnsupportedError(f"source store {store_name(source)} cannot list referrers")
    root = copy(source, src_reference, destination, dst_reference, options)

    seen = {root.digest}
    queue: deque[tuple[Descriptor, int]] = deque([(root, 1)])
    while queue:
        subject, level = queue.popleft()
        if options.depth and level > options.depth:
            continue
        for referrer in source.referrers(subject, options.artifact_type):
            if referrer.digest in seen:
                continue
            seen.add(referrer.digest)
            logger.debug("copy referrer digest=%s subject=%s", referrer.digest, subject.digest)
            copy_graph(source, destination, referrer, options)
            queue.append((referrer, level + 1))
    return root


class _CopySession:
    def __init__(self, source: Target, destination: Target, options: CopyOptions) -> None:
        self.source = source
        self.destination = destination
        self.options = options
        self._source_name = store_name(source)
        self._destination_name = store_name(destination)
        self._memo_lock = threading.Lock()
        self._memo: dict[str, _Node] = {}
        self._stop = threading.Event()
        self._failure: BaseException | None = None
        self._futures: dict[Future[Any], tuple[str, _Node]] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._root: _Node | None = None

    def claim(self, descriptor: Descriptor) -> tuple[_Node, bool]:
        with self._memo_lock:
            node = self._memo.get(descriptor.digest)
            if node is not None:
                return node, False
            node = _Node(descriptor=descriptor)
            self._memo[descriptor.digest] = node
            return node, True

    def run(self, root: Descriptor) -> None:
        workers = max(int(self.options.concurrency), 1)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ocisync-copy") as executor:
            self._executor = executor
            self._root, _ = self.claim(root)
            self._submit("visit", self._root)
            while self._futures:
                done, _ = wait(list(self._futures), timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    kind, node = self._futures.pop(future)
                    if future.cancelled():
                        continue
                    error = future.exception()
                    if error is not None:
                        self._fail(error)
                    elif not self._stop.is_set():
                        self._handle(kind, node, future.result())
                if self._cancel_requested() and not self._stop.is_set():
                    self._fail(CopyCancelledError("copy cancelled", descriptor=root))
            self._executor = None

        if self._failure is None and not self._root.done:
            self._failure = CopyCancelledError("copy cancelled", descriptor=root)
        if self._failure is not None:
            raise self._failure

    def _cancel_requested(self) -> bool:
        return self.options.cancel_event is not None and self.options.cancel_event.is_set()

    def _submit(self, kind: str, node: _Node) -> None:
        if self._stop.is_set() or self._executor is None or self._cancel_requested():
            return
        task = self._visit if kind == "visit" else self._push_manifest
        self._futures[self._executor.submit(task, node)] = (kind, node)

    def _fail(self, error: BaseException) -> None:
        if self._failure is None:
            self._failure = error
            logger.debug("copy aborted: %s", error)
        self._stop.set()
        for future in self._futures:
            future.cancel()

    def _handle(self, kind: str, node: _Node, children: tuple[Descriptor, ...] | None) -> None:
        if kind == "push" or children is None:
            self._complete(node)
            return
        for child in children:
            child_node, created = self.claim(child)
            if child_node.done:
                continue
            child_node.parents.append(node)
            node.pending += 1
            if created:
                self._submit("visit", child_node)
        if node.pending == 0:
            self._submit("push", node)

    def _complete(self, node: _Node) -> None:
        node.done = True
        parents, node.parents = node.parents, []
        for parent in parents:
            parent.pending -= 1
            if parent.pending == 0:
                self._submit("push", parent)

    # -- worker side ----------------------------------------------------

    def _visit(self, node: _Node) -> tuple[Descriptor, ...] | None:
        """Return the children still to copy, or None when the node is finished."""
        if self._stop.is_set():
            return None
        descriptor = node.descriptor
        check_existing = node is not self._root or self.options.skip_existing_root
        if check_existing and self._destination_call(self.destination.exists, descriptor):
            logger.debug("copy skipped existing digest=%s", descriptor.digest)
            self._run_hook(self.options.on_copy_skipped, descriptor)
            return None

        if not is_manifest(descriptor.media_type):
            self._transfer(descriptor)
            return None

        if descriptor.size > self.options.max_metadata_bytes:
            raise UnsupportedError(
                f"manifest size {descriptor.size} exceeds limit {self.options.max_metadata_bytes}",
                descriptor=descriptor,
                store=self._source_name,
            )
        data = self._fetch_verified(descriptor)
        try:
            manifest = decode_manifest(descriptor, data)
        except OciError as exc:
            raise exc.with_context(store=self._source_name)
        node.data = data
        return manifest.children(follow_subject=self.options.follow_subject)

    def _push_manifest(self, node: _Node) -> None:
        if self._stop.is_set() or node.data is None:
            return
        data, node.data = node.data, None
        self._run_hook(self.options.pre_copy, node.descriptor)
        self._push(node.descriptor, data)
        self._run_hook(self.options.post_copy, node.descriptor)

    def _transfer(self, descriptor: Descriptor) -> None:
        self._run_hook(self.options.pre_copy, descriptor)
        self._push(descriptor, self._fetch_verified(descriptor))
        self._run_hook(self.options.post_copy, descriptor)

    @staticmethod
    def _run_hook(hook: Hook | None, descriptor: Descriptor) -> None:
        if hook is not None:
            hook(descriptor)

    def _fetch_verified(self, descriptor: Descriptor) -> bytes:
        data = self._source_call(self.source.fetch, descriptor)
        try:
            verify_content(descriptor, data)
        except OciError as exc:
            raise exc.with_context(store=self._source_name)
        return data

    def _push(self, descriptor: Descriptor, data: bytes) -> None:
        try:
            self._destination_call(self.destination.push, descriptor, data)
        except AlreadyExistsError:
            logger.debug("copy destination already has digest=%s", descriptor.digest)
        else:
            logger.debug("copy pushed digest=%s size=%s", descriptor.digest, descriptor.size)

    def _source_call(self, func: Callable[..., Any], descriptor: Descriptor, *args: Any) -> Any:
        return _annotated(func, descriptor, self._source_name, *args)

    def _destination_call(self, func: Callable[..., Any], descriptor: Descriptor, *args: Any) -> Any:
        return _annotated(func, descriptor, self._destination_name, *args)


def _annotated(func: Callable[..., Any], descriptor: Descriptor, store: str, *args: Any) -> Any:
    try:
        return func(descriptor, *args)
    except OciError as exc:
        raise exc.with_context(descriptor=descriptor, store=store)
    except (OSError, ValueError) as exc:
        raise CopyError(f"{type(exc).__name__}: {exc}", descriptor=descriptor, store=store) from exc


def _tag_of(reference: str) -> str:
    tail = reference.rsplit("/", 1)[-1]
    if "@" in tail:
        return ""
    if "/" in reference and ":" in tail:
        return tail.split(":", 1)[1]
    if "/" in reference:
        return ""
    return reference
