"""
Element Model for Concord

Versioned store of addressable content units. ``commit`` is the optimistic
concurrency primitive the rest of the engine builds on: it applies content
only when the caller's expected prior version is still current.
"""

import asyncio
from typing import Any

from loguru import logger

from concord.core.exceptions import InvalidTransitionError, NotFoundError, VersionMismatchError
from concord.core.state import Element, utc_now


class ElementModel:
    """
    In-memory element store with per-element commit locks.

    Usage:
        elements = ElementModel()
        elements.create("para-1", content={"text": "Hello"})
        new_version = await elements.commit("para-1", 0, {"text": "Hi"})
    """

    def __init__(self) -> None:
        self._elements: dict[str, Element] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, element_id: str) -> asyncio.Lock:
        lock = self._locks.get(element_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[element_id] = lock
        return lock

    def exists(self, element_id: str) -> bool:
        return element_id in self._elements

    def get(self, element_id: str) -> Element:
        element = self._elements.get(element_id)
        if element is None:
            raise NotFoundError("element", element_id)
        return element

    def get_current_version(self, element_id: str) -> int:
        return self.get(element_id).current_version

    def list_elements(self, document_id: str | None = None) -> list[Element]:
        elements = sorted(self._elements.values(), key=lambda e: e.element_id)
        if document_id is None:
            return elements
        return [e for e in elements if e.document_id == document_id]

    def create(
        self,
        element_id: str,
        content: Any = None,
        document_id: str = "default",
        element_class: str | None = None,
    ) -> Element:
        """Introduce a new element at version 0."""
        if element_id in self._elements:
            raise InvalidTransitionError(f"Element already exists: {element_id}")

        element = Element(
            element_id=element_id,
            document_id=document_id,
            element_class=element_class,
            current_version=0,
            content=content,
        )
        self._elements[element_id] = element
        logger.debug(f"Created element {element_id} in document {document_id}")
        return element

    async def commit(
        self,
        element_id: str,
        expected_prior_version: int,
        new_content: Any,
        deleted: bool = False,
    ) -> int:
        """
        Apply content iff ``expected_prior_version`` is the stored version.

        Args:
            element_id: Target element
            expected_prior_version: Version the caller based its change on
            new_content: Content to store
            deleted: Mark the element deleted

        Returns:
            The new version number

        Raises:
            NotFoundError: Element is unknown
            VersionMismatchError: Another commit won the race
        """
        async with self._lock_for(element_id):
            return self.commit_nowait(element_id, expected_prior_version, new_content, deleted)

    def check_version(self, element_id: str, expected_prior_version: int) -> None:
        """Raise ``VersionMismatchError`` unless the stored version matches."""
        current = self.get_current_version(element_id)
        if current != expected_prior_version:
            raise VersionMismatchError(element_id, expected_prior_version, current)

    def commit_nowait(
        self,
        element_id: str,
        expected_prior_version: int,
        new_content: Any,
        deleted: bool = False,
    ) -> int:
        """Compare-and-set without taking the element lock."""
        self.check_version(element_id, expected_prior_version)
        element = self._elements[element_id]
        new_version = element.current_version + 1
        self._elements[element_id] = element.model_copy(
            update={
                "current_version": new_version,
                "content": new_content,
                "deleted": deleted,
                "updated_at": utc_now(),
            }
        )
        logger.debug(f"Element {element_id} advanced to version {new_version}")
        return new_version

    def restore(self, element: Element) -> None:
        """Load a persisted element snapshot, never moving a version backwards."""
        existing = self._elements.get(element.element_id)
        if existing is not None and existing.current_version > element.current_version:
            return
        self._elements[element.element_id] = element
