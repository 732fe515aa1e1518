"""DOM adapter that owns attachment of the sidebar container and its embedded frame.

This is the single component allowed to insert or remove the frame. Yielding
removes the frame from the document (hiding is not enough: the interference
happens at attachment level) and leaves an anchor comment in its place so that
resuming puts it back at the exact same position.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from xml.dom import minidom
from xml.dom.minidom import Document, Element, Node

_LOGGER = logging.getLogger("sidebar_bridge.yield_guard.frame_host")

ANCHOR_TEXT = "sidebar-frame-anchor"

PLACEHOLDER_TITLE = "Debugger compatibility mode is on"
PLACEHOLDER_HINT = "Requests are paused. Turn off debugger compatibility mode to send."
PLACEHOLDER_RESUME = "Resume sidebar panel"


def is_connected(node: Node | None) -> bool:
    cur = node
    while cur is not None:
        if cur.nodeType == Node.DOCUMENT_NODE:
            return True
        cur = cur.parentNode
    return False


def new_document() -> Document:
    impl = minidom.getDOMImplementation()
    doc = impl.createDocument(None, "html", None)
    doc.documentElement.appendChild(doc.createElement("body"))
    return doc


class FrameHost:
    def __init__(self, document: Document | None = None, *, frame_src: str = "index.html") -> None:
        self.document = document or new_document()
        self.root: Element = self.document.documentElement
        self.frame_src = frame_src

        self.container: Element | None = None
        self.content: Element | None = None
        self.placeholder: Element | None = None
        self.frame: Element | None = None

        self.anchor = self.document.createComment(ANCHOR_TEXT)
        self._frame_parent: Node | None = None
        self.visible = False
        self.on_resume_requested: Callable[[], None] | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Construction
    # ─────────────────────────────────────────────────────────────────────────

    def mount(self) -> Element:
        """Build the container (placeholder + frame) and attach it to the page root."""
        if self.container is not None:
            return self.container
        doc = self.document

        container = doc.createElement("div")
        container.setAttribute("class", "sidebar-container")
        content = doc.createElement("div")
        content.setAttribute("class", "sidebar__content")

        placeholder = self._build_placeholder()
        content.appendChild(placeholder)

        frame = doc.createElement("iframe")
        frame.setAttribute("class", "sidebar__frame")
        frame.setAttribute("src", self.frame_src)
        content.appendChild(frame)

        container.appendChild(content)
        self.root.appendChild(container)

        self.container = container
        self.content = content
        self.frame = frame
        return container

    def _build_placeholder(self) -> Element:
        if self.placeholder is not None:
            return self.placeholder
        doc = self.document
        placeholder = doc.createElement("div")
        placeholder.setAttribute("class", "sidebar__yield-placeholder")
        placeholder.setAttribute("style", "display:none")
        for cls, text, tag in (
            ("sidebar__yield-placeholder-title", PLACEHOLDER_TITLE, "div"),
            ("sidebar__yield-placeholder-hint", PLACEHOLDER_HINT, "div"),
            ("sidebar__yield-placeholder-button", PLACEHOLDER_RESUME, "button"),
        ):
            el = doc.createElement(tag)
            el.setAttribute("class", cls)
            el.appendChild(doc.createTextNode(text))
            placeholder.appendChild(el)
        self.placeholder = placeholder
        return placeholder

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def frame_exists(self) -> bool:
        return self.frame is not None

    @property
    def frame_connected(self) -> bool:
        return is_connected(self.frame)

    @property
    def container_connected(self) -> bool:
        return is_connected(self.container)

    @property
    def anchor_connected(self) -> bool:
        return is_connected(self.anchor)

    @property
    def placeholder_visible(self) -> bool:
        return self.placeholder is not None and self.placeholder.getAttribute("style") != "display:none"

    def frame_position(self) -> tuple[Node, int] | None:
        frame = self.frame
        if frame is None or frame.parentNode is None:
            return None
        parent = frame.parentNode
        return parent, parent.childNodes.index(frame)

    # ─────────────────────────────────────────────────────────────────────────
    # Mutations (only called by the yield controller)
    # ─────────────────────────────────────────────────────────────────────────

    def show_placeholder(self) -> None:
        self._build_placeholder().setAttribute("style", "display:flex")

    def hide_placeholder(self) -> None:
        if self.placeholder is not None:
            self.placeholder.setAttribute("style", "display:none")

    def request_resume(self) -> None:
        """Resume button on the placeholder."""
        if self.on_resume_requested is not None:
            self.on_resume_requested()

    def detach_frame(self) -> bool:
        frame = self.frame
        if frame is None or not is_connected(frame):
            return False
        parent = frame.parentNode
        if parent is None:
            return False

        if self.anchor_connected:
            # A stray reinsertion while yielding must not move the remembered slot.
            parent.removeChild(frame)
            return True

        # Anchor first so the frame can come back to this exact slot.
        if self.anchor.parentNode is not None and self.anchor.parentNode is not parent:
            self.anchor.parentNode.removeChild(self.anchor)
        if self.anchor.parentNode is not parent:
            parent.insertBefore(self.anchor, frame)

        parent.removeChild(frame)
        self._frame_parent = parent
        return True

    def reattach_frame(self) -> bool:
        frame = self.frame
        target_parent = self.anchor.parentNode or self._frame_parent
        if frame is not None and not is_connected(frame) and target_parent is not None and is_connected(target_parent):
            if frame.parentNode is not None:
                frame.parentNode.removeChild(frame)
            if self.anchor.parentNode is target_parent:
                target_parent.insertBefore(frame, self.anchor)
                target_parent.removeChild(self.anchor)
            else:
                target_parent.appendChild(frame)
            self._frame_parent = None
            return True

        if self.anchor.parentNode is not None:
            self.anchor.parentNode.removeChild(self.anchor)
        self._frame_parent = None
        return False

    def restore_container(self) -> bool:
        container = self.container
        if container is None or is_connected(container):
            return False
        if container.parentNode is not None:
            container.parentNode.removeChild(container)
        self.root.appendChild(container)
        _LOGGER.info("frame_host container_restored")
        return True


__all__ = ["ANCHOR_TEXT", "FrameHost", "is_connected", "new_document"]
