"""Name matching between the local roster and Keka employees."""

import logging
import os
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml

from app.config import settings

logger = logging.getLogger(__name__)

DEFAULT_VARIANTS_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "name_variants.yaml")


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    if not name:
        return ""
    return " ".join(name.lower().split())


class NameMatcher:
    """Matches a local roster name against Keka name permutations.

    Two names match when they are equal after normalisation, or when they
    have the same number of tokens and every token pair is equal or in the
    same variant class.
    """

    def __init__(
        self,
        variant_groups: Optional[Iterable[Iterable[str]]] = None,
        manual_mappings: Optional[Dict[str, str]] = None
    ):
        """Initialize name matcher.

        Args:
            variant_groups: Equivalence classes of spellings.
            manual_mappings: Local name -> Keka name overrides.
        """
        self._variant_class: Dict[str, int] = {}
        for class_id, group in enumerate(variant_groups or []):
            for spelling in group:
                self._variant_class[normalize_name(spelling)] = class_id

        self.manual_mappings = {
            normalize_name(local): normalize_name(remote)
            for local, remote in (manual_mappings or {}).items()
        }

    @classmethod
    def from_yaml(cls, path: Optional[str] = None) -> "NameMatcher":
        """Load the variant table from YAML.

        Args:
            path: YAML file (defaults to settings.name_variants_path, then the
                bundled table).
        """
        path = path or settings.name_variants_path or DEFAULT_VARIANTS_PATH
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        matcher = cls(data.get("variants") or [], data.get("manual_mappings") or {})
        logger.info(
            f"Loaded {len(matcher._variant_class)} name variants and "
            f"{len(matcher.manual_mappings)} manual mappings from {path}"
        )
        return matcher

    def _tokens_equivalent(self, a: str, b: str) -> bool:
        if a == b:
            return True
        class_a = self._variant_class.get(a)
        return class_a is not None and class_a == self._variant_class.get(b)

    def are_names_similar(self, name1: str, name2: str) -> bool:
        """Check two names for equality up to known spelling variants."""
        n1 = normalize_name(name1)
        n2 = normalize_name(name2)
        if not n1 or not n2:
            return False
        if n1 == n2:
            return True

        tokens1 = n1.split(" ")
        tokens2 = n2.split(" ")
        if len(tokens1) != len(tokens2):
            return False
        return all(self._tokens_equivalent(a, b) for a, b in zip(tokens1, tokens2))

    def candidate_names(self, remote: Dict[str, Any]) -> List[str]:
        """Build the Keka-side name permutations of one employee."""
        first = remote.get("firstName") or ""
        middle = remote.get("middleName") or ""
        last = remote.get("lastName") or ""

        candidates = [
            f"{first} {last}",
            f"{first} {middle} {last}" if middle else "",
            remote.get("displayName") or "",
            f"{last} {first}",
        ]
        return [normalize_name(name) for name in candidates if normalize_name(name)]

    def local_targets(self, local_name: str) -> List[str]:
        """The local name plus its manual mapping, if any."""
        normalized = normalize_name(local_name)
        targets = [normalized] if normalized else []
        mapped = self.manual_mappings.get(normalized)
        if mapped:
            targets.append(mapped)
        return targets

    def matches(self, local_name: str, remote: Dict[str, Any]) -> bool:
        targets = self.local_targets(local_name)
        return any(
            self.are_names_similar(target, candidate)
            for target in targets
            for candidate in self.candidate_names(remote)
        )

    def find_match(
        self,
        local_name: str,
        remote_employees: List[Dict[str, Any]],
        is_taken: Callable[[str], bool] = lambda remote_id: False
    ) -> Optional[Dict[str, Any]]:
        """Find the first Keka employee whose name matches a local name.

        Candidates whose id is taken by another local row are skipped and the
        conflict is logged. When several candidates match, the first in
        remote order wins.

        Args:
            local_name: Name from the local roster.
            remote_employees: Keka employee dictionaries.
            is_taken: Returns True if an id is held by a different local row.
        """
        for remote in remote_employees:
            if not self.matches(local_name, remote):
                continue
            if is_taken(remote.get("id")):
                logger.warning(
                    f"Skipping \"{local_name}\" - employee_id {remote.get('id')} already assigned to another employee"
                )
                continue
            return remote
        return None
