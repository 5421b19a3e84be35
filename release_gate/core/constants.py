"""
Constants
Centralised stage names, quality-gate checks, and trigger path rules.
"""
# CI pipeline stages, in execution order
STAGE_PROVISION = "provision"
STAGE_CACHE_RESTORE = "cache-restore"
STAGE_DISK_QUOTA = "disk-quota"
STAGE_QUALITY_GATE = "quality-gate"
STAGE_TEST = "test"
STAGE_LOCK_SNAPSHOT = "lock-snapshot"
STAGE_LOCK_DRIFT = "lock-drift"
STAGE_CACHE_SAVE = "cache-save"

# Smoke pipeline stages
STAGE_IMAGE_BUILD = "image-build"
STAGE_CONTAINER_START = "container-start"
STAGE_READINESS = "readiness"
STAGE_PROBE = "probe"
STAGE_TEARDOWN = "teardown"

# Quality gate checks, in execution order
CHECK_LICENSE = "license"
CHECK_LINT = "lint"
CHECK_FORMAT = "format"
GATE_CHECKS = [CHECK_LICENSE, CHECK_LINT, CHECK_FORMAT]

# Test phases, in execution order
PHASE_UNIT = "unit"
PHASE_INTEGRATION = "integration"

# Smoke run labels
SMOKE_DEFAULT = "default"
SMOKE_WITH_CONFIG = "with-config"

# Trigger path rules
CI_IGNORE_PATHS = [
    "docs/**",
    "etc/**",
    ".github/**",
    "**.md",
    "**.yml",
    ".dockerignore",
    "docker/**",
]
SMOKE_TRIGGER_PATHS = [
    ".github/workflows/docker-build-image.yml",
    "Dockerfile",
    "docker/**",
]
TRIGGER_BRANCHES = ["main"]

# CLI exit codes
EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_TIMED_OUT = 124
