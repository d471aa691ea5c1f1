"""Shared constants."""

DEFAULT_EVENT_TOPIC = "crmflow.events"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_STEPS_PER_RUN = 100

BRANCH_TRUE = "true"
BRANCH_FALSE = "false"
BRANCH_NO_VALUE = "no_value"
