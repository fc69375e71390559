"""Tag resolution for rollup aggregation keys."""

from __future__ import annotations

from typing import Iterable, Literal, Mapping

from pydantic import BaseModel, Field

# Sentinel key for sessions whose tag cannot be resolved
UNRESOLVED_TAG = "_unknown"

DEFAULT_LABEL_TO_ID: dict[str, str] = {
    "Focus": "focus",
    "Rest": "rest",
    "Work": "work",
    "Study": "study",
}


class UserTag(BaseModel):
    """A user-defined tag. The label maps session activity labels to the id."""

    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    color: str = Field(min_length=1)
    activity: Literal["Focus", "Rest"]

    model_config = {"str_strip_whitespace": True}


def build_label_table(user_tags: Iterable[UserTag] = ()) -> dict[str, str]:
    """Build the label -> tag id table for a user.

    Starts from the default labels; user tags extend or override them.
    """
    table = dict(DEFAULT_LABEL_TO_ID)
    for tag in user_tags:
        table[tag.label] = tag.id
    return table


def resolve_tag(
    tag_id: str | None,
    activity: str | None,
    label_to_id: Mapping[str, str],
) -> str:
    """Resolve the aggregation key for a session.

    An explicit tag id wins. Otherwise the activity label is looked up in
    `label_to_id`. Falls back to UNRESOLVED_TAG.
    """
    explicit = tag_id.strip() if isinstance(tag_id, str) else ""
    if explicit:
        return explicit
    label = activity.strip() if isinstance(activity, str) else ""
    if label and label in label_to_id:
        return label_to_id[label]
    return UNRESOLVED_TAG
