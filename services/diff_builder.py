"""
Diff builder: turns a row match outcome into pending change entries.

A row with N non-key columns always yields exactly N entries, whatever
the match outcome.
"""

from models.crm import MatchOutcome, MatchType
from models.change import ChangeAction, ChangeStatus, PendingChange

_STATUS_FOR_MATCH = {
    MatchType.FOUND: ChangeStatus.FOUND,
    MatchType.DUPLICATE: ChangeStatus.DUPLICATE,
    MatchType.NOT_FOUND: ChangeStatus.NOT_FOUND,
}


def non_key_columns(row: dict[str, str], key_columns: list[str]) -> list[str]:
    keys = set(key_columns)
    return [column for column in row if column not in keys]


def build_changes(
    session_id: str,
    outcome: MatchOutcome,
    row: dict[str, str],
    key_columns: list[str],
) -> list[PendingChange]:
    """
    Build one pending change per non-key column of the row.

    Matched rows (found or duplicate) propose an update against the
    matched record's current value. Unmatched rows are recorded as
    ignored and deselected so they never reach execution by default.
    """
    status = _STATUS_FOR_MATCH[outcome.match_type]
    entity = outcome.entity

    changes = []
    for column in non_key_columns(row, key_columns):
        new_value = row.get(column) or ""
        if entity is not None:
            changes.append(PendingChange(
                session_id=session_id,
                row_index=outcome.row_index,
                search_key=outcome.search_key,
                entity_id=entity.id,
                entity_kind=entity.kind,
                field=column,
                current_value=entity.value_of(column),
                new_value=new_value,
                action=ChangeAction.UPDATE,
                status=status,
                match_type=outcome.match_type,
                selected=True,
            ))
        else:
            changes.append(PendingChange(
                session_id=session_id,
                row_index=outcome.row_index,
                search_key=outcome.search_key,
                field=column,
                current_value=None,
                new_value=new_value,
                action=ChangeAction.IGNORE,
                status=status,
                match_type=outcome.match_type,
                selected=False,
            ))
    return changes
