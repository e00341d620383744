"""
Unit tests for the ElementModel module.

Tests the element store including:
- Element creation and lookup
- Optimistic commit (compare-and-set)
- Version monotonicity and snapshot restore
"""

import asyncio

import pytest

from concord.core.exceptions import InvalidTransitionError, NotFoundError, VersionMismatchError
from concord.core.state import Element
from concord.elements.model import ElementModel

# =============================================================================
# TEST FIXTURES
# =============================================================================


@pytest.fixture
def elements():
    """Element model with one paragraph."""
    model = ElementModel()
    model.create("para-1", content={"text": "Hello"}, document_id="doc-1")
    return model


# =============================================================================
# TEST CREATION AND LOOKUP
# =============================================================================


class TestElementLookup:
    """Tests for element creation and queries."""

    def test_create_starts_at_version_zero(self, elements):
        """Test new elements start at version 0."""
        element = elements.get("para-1")

        assert element.current_version == 0
        assert element.content == {"text": "Hello"}
        assert element.deleted is False

    def test_create_duplicate_rejected(self, elements):
        """Test creating an existing element fails."""
        with pytest.raises(InvalidTransitionError):
            elements.create("para-1")

    def test_unknown_element(self, elements):
        """Test lookups of unknown elements raise NotFoundError."""
        with pytest.raises(NotFoundError) as exc_info:
            elements.get_current_version("missing")

        assert exc_info.value.kind == "element"
        assert exc_info.value.identifier == "missing"

    def test_list_elements_by_document(self, elements):
        """Test listing filters by document and sorts by id."""
        elements.create("para-0", document_id="doc-1")
        elements.create("cell-1", document_id="doc-2")

        assert [e.element_id for e in elements.list_elements()] == ["cell-1", "para-0", "para-1"]
        assert [e.element_id for e in elements.list_elements("doc-1")] == ["para-0", "para-1"]


# =============================================================================
# TEST COMMIT
# =============================================================================


class TestCommit:
    """Tests for optimistic commits."""

    @pytest.mark.asyncio
    async def test_commit_advances_version(self, elements):
        """Test a commit with the current version succeeds."""
        version = await elements.commit("para-1", 0, {"text": "Hi"})

        assert version == 1
        assert elements.get("para-1").content == {"text": "Hi"}

    @pytest.mark.asyncio
    async def test_commit_stale_version(self, elements):
        """Test a commit against an old version is refused."""
        await elements.commit("para-1", 0, {"text": "first"})

        with pytest.raises(VersionMismatchError) as exc_info:
            await elements.commit("para-1", 0, {"text": "second"})

        assert exc_info.value.expected == 0
        assert exc_info.value.actual == 1
        assert elements.get("para-1").content == {"text": "first"}

    @pytest.mark.asyncio
    async def test_versions_strictly_increase(self, elements):
        """Test each successful commit adds exactly one version."""
        versions = []
        for i in range(5):
            versions.append(await elements.commit("para-1", i, {"text": str(i)}))

        assert versions == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_concurrent_commits_single_winner(self, elements):
        """Test two commits against the same version: exactly one wins."""
        results = await asyncio.gather(
            elements.commit("para-1", 0, {"text": "a"}),
            elements.commit("para-1", 0, {"text": "b"}),
            return_exceptions=True,
        )

        winners = [r for r in results if r == 1]
        losers = [r for r in results if isinstance(r, VersionMismatchError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert elements.get_current_version("para-1") == 1

    @pytest.mark.asyncio
    async def test_commit_delete(self, elements):
        """Test deletion is recorded as a new version."""
        version = await elements.commit("para-1", 0, None, deleted=True)

        element = elements.get("para-1")
        assert version == 1
        assert element.deleted is True

    def test_check_version(self, elements):
        """Test check_version raises only on mismatch."""
        elements.check_version("para-1", 0)

        with pytest.raises(VersionMismatchError):
            elements.check_version("para-1", 3)


# =============================================================================
# TEST RESTORE
# =============================================================================


class TestRestore:
    """Tests for journal snapshot restore."""

    def test_restore_new_element(self):
        """Test restoring an element that is not loaded yet."""
        model = ElementModel()
        model.restore(Element(element_id="p", current_version=4, content="x"))

        assert model.get_current_version("p") == 4

    def test_restore_never_moves_backwards(self, elements):
        """Test an older snapshot does not replace a newer element."""
        elements.commit_nowait("para-1", 0, {"text": "v1"})
        elements.commit_nowait("para-1", 1, {"text": "v2"})

        elements.restore(Element(element_id="para-1", current_version=1, content={"text": "v1"}))

        assert elements.get("para-1").current_version == 2
        assert elements.get("para-1").content == {"text": "v2"}
