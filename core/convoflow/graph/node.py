"""
Node Protocol - The steps of a conversation workflow.

A node is one step of the conversation. Every node shares the same shape
(title, config, position, actions); the ``type`` decides how the executor
treats it:

- start: entry point, optional welcome message
- message / ai / book_appointment: produce a reply and move on
- variable: write one session variable
- action: run CRM side effects
- condition: deterministic branch on a field
- milestone: AI-judged branch on goal achievement
- end: closing message, terminates the session

Payloads coming from the editor use a few legacy spellings (``node_id``,
``node_type``, ``position_x``/``position_y``, goal fields outside ``config``).
They are normalised on validation so the rest of the engine only sees one form.
"""

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, model_validator


class NodeType(StrEnum):
    """Closed set of node kinds."""

    START = "start"
    MESSAGE = "message"
    MILESTONE = "milestone"
    BOOK_APPOINTMENT = "book_appointment"
    CONDITION = "condition"
    ACTION = "action"
    VARIABLE = "variable"
    AI = "ai"
    END = "end"


# Fields the editor stores at the top level of a node row that belong in config
_CONFIG_PROMOTED_FIELDS = (
    "goal_description",
    "possible_outcomes",
    "extra_instructions",
    "calendar_ids",
    "description",
)


class ActionType(StrEnum):
    """Side-effecting operations a node can perform."""

    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    SEND_WEBHOOK = "send_webhook"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    UPDATE_CUSTOM_FIELD = "update_custom_field"
    CREATE_OPPORTUNITY = "create_opportunity"
    CUSTOM = "custom"


class ActionSpec(BaseModel):
    """
    A single side-effecting instruction attached to a node.

    ``data`` is type-specific and may contain ``{{variable}}`` placeholders;
    ``value`` is the shorthand the editor uses for single-value actions
    (e.g. the tag name).
    """

    type: ActionType = Field(validation_alias=AliasChoices("type", "action_type"))
    data: dict[str, Any] = Field(default_factory=dict)
    value: Any = None

    model_config = {"extra": "allow", "populate_by_name": True}


class Position(BaseModel):
    """2-D layout coordinate owned by the editor."""

    x: float = 0.0
    y: float = 0.0


class NodeSpec(BaseModel):
    """
    Specification for a node in a workflow graph.

    Examples:
        NodeSpec(id="welcome", type=NodeType.MESSAGE, config={"message": "Hi {{name}}"})

        NodeSpec(
            id="qualify",
            type=NodeType.MILESTONE,
            config={
                "goal_description": "Find out whether they want a call",
                "possible_outcomes": ["yes", "no"],
            },
        )
    """

    id: str = Field(validation_alias=AliasChoices("id", "node_id"))
    type: NodeType = Field(validation_alias=AliasChoices("type", "node_type"))
    title: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    position: Position = Field(default_factory=Position)
    actions: list[ActionSpec] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _normalise_editor_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        config = dict(data.get("config") or {})
        for key in _CONFIG_PROMOTED_FIELDS:
            if key in data:
                value = data.pop(key)
                if value is not None:
                    config.setdefault(key, value)
        data["config"] = config
        if "position" not in data and ("position_x" in data or "position_y" in data):
            data["position"] = {
                "x": data.pop("position_x", 0) or 0,
                "y": data.pop("position_y", 0) or 0,
            }
        if not data.get("actions"):
            # Action nodes saved by the editor keep their list (or a single
            # action) inside config
            if isinstance(config.get("actions"), list):
                data["actions"] = config["actions"]
            elif config.get("action_type"):
                data["actions"] = [
                    {
                        "type": config["action_type"],
                        "data": config.get("data") or {},
                        "value": config.get("value"),
                    }
                ]
            else:
                data["actions"] = []
        return data

    @property
    def name(self) -> str:
        """Display name used in events: title, falling back to the type."""
        return self.title or self.type.value

    @property
    def goal_description(self) -> str:
        return self.config.get("goal_description") or ""

    @property
    def extra_instructions(self) -> str:
        return self.config.get("extra_instructions") or ""

    @property
    def possible_outcomes(self) -> list[str]:
        return list(self.config.get("possible_outcomes") or [])

    @property
    def custom_conditions(self) -> list[dict[str, Any]]:
        """Extra labelled conditions declared on a condition node."""
        return list(self.config.get("conditions") or [])

    def merged(self, updates: dict[str, Any]) -> "NodeSpec":
        """
        Return a copy with ``updates`` merged in.

        Unspecified fields are retained; ``config`` is merged key by key and
        ``id`` never changes.
        """
        current = self.model_dump()
        for key, value in updates.items():
            if key in ("id", "node_id"):
                continue
            if key == "node_type":
                key = "type"
            if key == "config" and isinstance(value, dict):
                current["config"] = {**current["config"], **value}
                if "actions" in value or "action_type" in value:
                    # Re-derived from config by the validator
                    current["actions"] = []
                    if "actions" not in value:
                        current["config"].pop("actions", None)
            elif key in _CONFIG_PROMOTED_FIELDS:
                current["config"][key] = value
            else:
                current[key] = value
        return NodeSpec.model_validate(current)
