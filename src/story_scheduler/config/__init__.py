"""Config loading and validation entrypoints: ``scheduler.toml`` + ``STORYSCHED_`` env."""

from story_scheduler.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    env_parsers,
    load_config,
    normalize_paths,
)
from story_scheduler.config.schema import (
    DEFAULT_CONFIG,
    EXTERNAL_DEPENDENCY_POLICIES,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    SchedulerFileConfig,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EXTERNAL_DEPENDENCY_POLICIES",
    "PATH_FIELDS",
    "SchedulerFileConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "dump_redacted",
    "env_name_for_path",
    "env_parsers",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
