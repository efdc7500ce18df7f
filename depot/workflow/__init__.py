"""Pure workflow layer: status enums and per-kind transition machines."""

from depot.workflow.engine import Transition, allowed_events, terminal_states, transition  # noqa: F401
from depot.workflow.statuses import INITIAL_STATUS, STATUS_ENUMS, is_valid_status  # noqa: F401
