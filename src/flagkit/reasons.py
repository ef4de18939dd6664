"""
Informational reasons surfaced alongside every decision. These are not errors.
"""

from enum import StrEnum


class DecisionReason(StrEnum):
    BUCKETED_INTO_VARIATION = "Bucketed into variation"
    NOT_BUCKETED_INTO_VARIATION = "Not bucketed into a variation"
    BUCKETED_VARIATION_NOT_FOUND = "Bucketed variation not found"
    BUCKETED_INTO_FEATURE_TEST = "Bucketed into feature test"
    BUCKETED_INTO_ROLLOUT = "Bucketed into feature rollout"
    DOES_NOT_QUALIFY = "Does not meet audience targeting conditions"
    FAILED_ROLLOUT_TARGETING = "Does not meet rollout targeting rule"
    FAILED_ROLLOUT_BUCKETING = "Not bucketed into rollout"
    DOES_NOT_MEET_ROLLOUT_TARGETING = "Does not meet any rollout targeting rule"
    NO_ROLLOUT_FOR_FEATURE = "No rollout for feature"
    ROLLOUT_HAS_NO_EXPERIMENTS = "Rollout has no experiments"
    NOT_IN_GROUP = "Not bucketed into any experiment in mutex group"
    OVERRIDE_VARIATION_ASSIGNMENT_FOUND = "Override variation assignment found"
    INVALID_OVERRIDE_VARIATION_ASSIGNMENT = "Invalid override variation assignment"
    NO_OVERRIDE_VARIATION_ASSIGNMENT = "No override variation assignment"
    WHITELIST_VARIATION_ASSIGNMENT_FOUND = "Whitelist variation assignment found"
    INVALID_WHITELIST_VARIATION_ASSIGNMENT = "Invalid whitelist variation assignment"
    NO_WHITELIST_VARIATION_ASSIGNMENT = "No whitelist variation assignment"
    USER_PROFILE_VARIATION_FOUND = "User profile variation found"
    EXPERIMENT_NOT_RUNNING = "Experiment is not running"
    CMAB_FETCH_FAILED = "CMAB fetch failed"
