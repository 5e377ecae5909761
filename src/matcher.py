"""
Selects worker templates for a job label.
"""

import logging
import random
from typing import List, Optional, Sequence

from models import NodeMode, WorkerTemplate, parse_labels

logger = logging.getLogger(__name__)


class NoConfigurationError(Exception):
    """No template can serve the requested label."""


def matches(template: WorkerTemplate, label: Optional[str]) -> bool:
    """
    Decide whether a template can run work with the given label.

    An empty label means "any worker" and is only served by NORMAL
    templates. A non-empty label matches a template whose label set shares
    an atom with it; NORMAL templates with no labels at all take anything.
    """
    wanted = parse_labels(label or "")
    if not wanted:
        return template.mode == NodeMode.NORMAL
    if template.mode == NodeMode.NORMAL and not template.label_set:
        return True
    return bool(template.label_set & wanted)


class TemplateMatcher:
    """Template lookup over one controller's templates."""

    def __init__(
        self,
        templates: Sequence[WorkerTemplate],
        rng: Optional[random.Random] = None,
    ):
        self.templates = list(templates)
        self.rng = rng or random.Random()

    def candidates(self, label: Optional[str]) -> List[WorkerTemplate]:
        """All matching templates in a freshly shuffled order."""
        found = [t for t in self.templates if matches(t, label)]
        self.rng.shuffle(found)
        return found

    def match(self, label: Optional[str]) -> Optional[WorkerTemplate]:
        found = self.candidates(label)
        return found[0] if found else None

    def require(self, label: Optional[str], owner: str = "") -> List[WorkerTemplate]:
        """
        Like candidates(), but raise when nothing matches.

        Raises:
            NoConfigurationError: If no template serves the label
        """
        if not self.templates:
            raise NoConfigurationError(
                f"Cloud {owner} does not have any defined instance configurations."
            )
        found = self.candidates(label)
        if not found:
            raise NoConfigurationError(
                f"Cloud {owner} does not have any matching instance configurations."
            )
        return found
