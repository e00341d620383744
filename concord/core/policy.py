"""Policy book: global default plus document and element-class overrides."""

import json
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from concord.core.exceptions import InvalidPolicyError
from concord.core.state import Element, Policy


class PolicyBook(BaseModel):
    """
    Read-only policy configuration consumed during resolution.

    Lookup order: element class override, then document override, then the
    global default.

    Example:
        >>> book = PolicyBook(
        ...     default=Policy(strategy="last_write_wins"),
        ...     element_classes={"protected": Policy(strategy="manual_merge")},
        ... )
        >>> book.policy_for("doc-1", "protected").strategy
        'manual_merge'
    """

    model_config = ConfigDict(frozen=True)

    default: Policy = Field(default_factory=Policy)
    documents: dict[str, Policy] = Field(default_factory=dict)
    element_classes: dict[str, Policy] = Field(default_factory=dict)

    def policy_for(self, document_id: str, element_class: str | None = None) -> Policy:
        if element_class is not None and element_class in self.element_classes:
            return self.element_classes[element_class]
        if document_id in self.documents:
            return self.documents[document_id]
        return self.default

    def policy_for_element(self, element: Element) -> Policy:
        return self.policy_for(element.document_id, element.element_class)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "PolicyBook":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidPolicyError(f"Invalid policy book: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "PolicyBook":
        """Load a policy book from a ``.json``, ``.yaml`` or ``.yml`` file."""
        path = Path(path)
        if not path.exists():
            raise InvalidPolicyError(f"Policy file not found: {path}")

        text = path.read_text()
        try:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(text) or {}
            else:
                data = json.loads(text)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise InvalidPolicyError(f"Could not parse policy file {path}: {e}") from e

        if not isinstance(data, dict):
            raise InvalidPolicyError(f"Policy file {path} must contain a mapping")

        book = cls.from_mapping(data)
        logger.info(
            f"Loaded policy book from {path}: default={book.default.strategy}, "
            f"{len(book.documents)} document overrides, "
            f"{len(book.element_classes)} element class overrides"
        )
        return book
