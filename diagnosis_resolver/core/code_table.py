"""
Code Table - Static DCSPH location/pathology lookup

Responsibilities:
- Load Table A (locations) and Table B (pathologies) from JSON
- Look up a 4-digit code and return its descriptions
- Validate code format and existence with a typed failure reason
- Build codes from segments and reject clinically illogical combinations
- Search combinations by description text

Design principles:
- Read-only after initialization (safe to share across concurrent resolutions)
- Fail fast on missing or malformed data files
- No knowledge of candidates, scores or conversations

A code is the 2-digit location segment followed by the 2-digit pathology
segment: '7920' = location 79 (knie/onderbeen/voet) + pathology 20 (tendinitis).
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from diagnosis_resolver.contracts import CodeEntry
from diagnosis_resolver.exceptions import KnowledgeBaseError

logger = logging.getLogger(__name__)

CODE_LENGTH = 4
SEGMENT_LENGTH = 2

# Regions on which cardiovascular pathologies make no sense
LIMB_REGIONS = {"onderste-extremiteit", "bovenste-extremiteit"}

# Fractures need bone; these locations are superficial soft tissue only
SOFT_TISSUE_LOCATIONS = {"13", "20", "21"}
FRACTURE_PATHOLOGY = "36"


class CodeCheckFailure(str, Enum):
    """Why a code failed validation"""
    NOT_A_STRING = "not_a_string"
    WRONG_LENGTH = "wrong_length"
    NON_NUMERIC = "non_numeric"
    UNKNOWN_LOCATION = "unknown_location"
    UNKNOWN_PATHOLOGY = "unknown_pathology"


@dataclass(frozen=True)
class CodeCheck:
    """
    Result of CodeTable.validate().

    Attributes:
        is_valid: True if format is correct and both segments exist
        entry: Resolved entry (None when invalid)
        failure: Reason for rejection (None when valid)
        message: Human-readable explanation
    """
    is_valid: bool
    entry: Optional[CodeEntry] = None
    failure: Optional[CodeCheckFailure] = None
    message: str = ""


class CodeTable:
    """
    In-memory DCSPH code table.

    Example:
        >>> table = CodeTable("data/code_table.json")
        >>> table.lookup("7920").pathology_description
        'Epicondylitis / tendinitis / tendovaginitis'
    """

    def __init__(self, table_path: Union[str, Path]):
        """
        Load code table from JSON.

        Args:
            table_path: Path to code_table.json

        Raises:
            FileNotFoundError: If the file doesn't exist
            KnowledgeBaseError: If the file is missing tables or has duplicates
        """
        self.table_path = Path(table_path)

        if not self.table_path.exists():
            raise FileNotFoundError(f"Code table not found: {table_path}")

        with open(self.table_path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        self.version = data.get("version", "unknown")
        self.locations = self._index(data, "locations")
        self.pathologies = self._index(data, "pathologies")

        logger.info(
            f"Code table {self.version} loaded: {len(self.locations)} locations, "
            f"{len(self.pathologies)} pathologies"
        )

    @staticmethod
    def _index(data: Dict[str, Any], key: str) -> Dict[str, Dict[str, str]]:
        """Index one table by segment code, rejecting malformed entries."""
        rows = data.get(key)
        if not isinstance(rows, list) or not rows:
            raise KnowledgeBaseError(f"Code table missing '{key}' list")

        index = {}
        for row in rows:
            code = row.get("code") if isinstance(row, dict) else None
            if not isinstance(code, str) or not re.fullmatch(r"\d{2}", code):
                raise KnowledgeBaseError(f"Invalid {key} entry: {row!r}")
            if code in index:
                raise KnowledgeBaseError(f"Duplicate {key} code: {code}")
            index[code] = row
        return index

    def validate(self, code: Any) -> CodeCheck:
        """
        Check code format and existence.

        Args:
            code: Candidate code (any type, non-strings are rejected)

        Returns:
            CodeCheck: Valid check with entry, or failure reason with message
        """
        if not isinstance(code, str):
            return CodeCheck(False, failure=CodeCheckFailure.NOT_A_STRING,
                             message="Code moet een tekst zijn")

        code = code.strip()
        if len(code) != CODE_LENGTH:
            return CodeCheck(False, failure=CodeCheckFailure.WRONG_LENGTH,
                             message=f"Code moet exact {CODE_LENGTH} cijfers bevatten, kreeg {len(code)}")

        if not code.isdigit() or not code.isascii():
            return CodeCheck(False, failure=CodeCheckFailure.NON_NUMERIC,
                             message="Code mag alleen cijfers bevatten")

        location_code, pathology_code = code[:SEGMENT_LENGTH], code[SEGMENT_LENGTH:]

        if location_code not in self.locations:
            return CodeCheck(False, failure=CodeCheckFailure.UNKNOWN_LOCATION,
                             message=f"Onbekende locatiecode: {location_code}")

        if pathology_code not in self.pathologies:
            return CodeCheck(False, failure=CodeCheckFailure.UNKNOWN_PATHOLOGY,
                             message=f"Onbekende pathologiecode: {pathology_code}")

        return CodeCheck(True, entry=self._entry(location_code, pathology_code),
                         message="Geldige code")

    def lookup(self, code: Any) -> Optional[CodeEntry]:
        """Return the entry for a code, or None if malformed or unknown."""
        return self.validate(code).entry

    def exists(self, code: Any) -> bool:
        return self.validate(code).is_valid

    def build(self, location_code: str, pathology_code: str) -> Optional[CodeEntry]:
        """Compose a code from its two segments (None if either is unknown)."""
        if location_code not in self.locations or pathology_code not in self.pathologies:
            return None
        return self._entry(location_code, pathology_code)

    def _entry(self, location_code: str, pathology_code: str) -> CodeEntry:
        location = self.locations[location_code]
        pathology = self.pathologies[pathology_code]
        return CodeEntry(
            code=f"{location_code}{pathology_code}",
            location_code=location_code,
            pathology_code=pathology_code,
            location_description=location["description"],
            pathology_description=pathology["description"],
            region=location.get("region", ""),
            category=pathology.get("category", ""),
        )

    def is_logical_combination(self, location_code: str, pathology_code: str) -> bool:
        """
        Reject combinations that make no clinical sense.

        Rules:
        - Cardiovascular pathologies are never coded on a limb
        - Fractures are never coded on superficial soft-tissue regions
        """
        location = self.locations.get(location_code)
        pathology = self.pathologies.get(pathology_code)
        if location is None or pathology is None:
            return False

        if pathology.get("category") == "cardiovasculair" and location.get("region") in LIMB_REGIONS:
            return False

        if pathology_code == FRACTURE_PATHOLOGY and location_code in SOFT_TISSUE_LOCATIONS:
            return False

        return True

    def search_by_description(self, term: str) -> List[CodeEntry]:
        """
        Find logical combinations whose full description contains a term.

        Args:
            term: Case-insensitive search text

        Returns:
            list: Matching entries, ordered by location then pathology code
        """
        needle = term.strip().lower()
        if not needle:
            return []

        results = []
        for location_code in sorted(self.locations):
            for pathology_code in sorted(self.pathologies):
                if not self.is_logical_combination(location_code, pathology_code):
                    continue
                entry = self._entry(location_code, pathology_code)
                if needle in entry.full_description.lower():
                    results.append(entry)
        return results

    def stats(self) -> Dict[str, Any]:
        """Table sizes and the share of combinations that are logical."""
        theoretical = len(self.locations) * len(self.pathologies)
        valid = sum(
            1
            for loc in self.locations
            for path in self.pathologies
            if self.is_logical_combination(loc, path)
        )
        return {
            "version": self.version,
            "total_locations": len(self.locations),
            "total_pathologies": len(self.pathologies),
            "theoretical_combinations": theoretical,
            "valid_combinations": valid,
            "coverage": (valid / theoretical * 100) if theoretical else 0.0,
        }
