"""
Record matcher: finds the CRM record behind one uploaded row.

Key columns are tried in priority order. The first key column with a
value that yields at least one CRM record decides the row; later key
columns are never probed. A failed search on one key column is logged
and the next key column is tried.
"""

from typing import Optional
import structlog

from exceptions import RecordLookupError
from integrations.bitrix_client import BitrixClient
from models.crm import (
    CrmEntity,
    MatchOutcome,
    MatchType,
    TargetType,
    kinds_for_target,
)

logger = structlog.get_logger(__name__)


def describe_search_key(key_column: str, value: str) -> str:
    return f"{key_column}: {value}"


class RecordMatcher:
    """Matches rows against the CRM through the rate-limited client."""

    def __init__(self, client: BitrixClient):
        self.client = client

    def search(
        self,
        key_column: str,
        value: str,
        target_type: TargetType,
        domain: Optional[str] = None,
    ) -> list[CrmEntity]:
        """
        Search every kind covered by target_type and concatenate results.

        With a single kind, a failed search raises. With "both", each
        kind is searched independently and a failure on one kind only
        drops that kind's results.
        """
        kinds = kinds_for_target(target_type)
        if len(kinds) == 1:
            return self.client.search(kinds[0], key_column, value, domain=domain)

        results: list[CrmEntity] = []
        for kind in kinds:
            try:
                results.extend(self.client.search(kind, key_column, value, domain=domain))
            except Exception as e:
                logger.warning(
                    "kind_search_failed",
                    kind=kind.value,
                    key_column=key_column,
                    error=str(e)
                )
        return results

    def match_row(
        self,
        row_index: int,
        row: dict[str, str],
        key_columns: list[str],
        target_type: TargetType,
        domain: Optional[str] = None,
    ) -> MatchOutcome:
        """
        Classify one row as found, duplicate or not found.

        Args:
            row_index: Position of the row in the upload
            row: Column -> value
            key_columns: Key columns in priority order
            target_type: contacts, companies or both
            domain: Portal domain for the CRM calls

        Returns:
            MatchOutcome; duplicates carry the first returned record
        """
        for key_column in key_columns:
            value = (row.get(key_column) or "").strip()
            if not value:
                continue

            try:
                entities = self.search(key_column, value, target_type, domain=domain)
            except Exception as e:
                lookup_error = RecordLookupError(key_column, value, e)
                logger.warning(
                    "key_column_lookup_failed",
                    row_index=row_index,
                    key_column=key_column,
                    error=lookup_error.message
                )
                continue

            if not entities:
                continue

            match_type = MatchType.DUPLICATE if len(entities) > 1 else MatchType.FOUND
            if match_type == MatchType.DUPLICATE:
                logger.info(
                    "duplicate_match",
                    row_index=row_index,
                    key_column=key_column,
                    candidates=len(entities)
                )
            return MatchOutcome(
                row_index=row_index,
                match_type=match_type,
                search_key=describe_search_key(key_column, value),
                entity=entities[0],
                candidates=len(entities),
            )

        return MatchOutcome(
            row_index=row_index,
            match_type=MatchType.NOT_FOUND,
            search_key=", ".join(
                describe_search_key(col, row.get(col) or "") for col in key_columns
            ),
        )
