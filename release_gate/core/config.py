"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    CERESDB_ADDR             — Host address the smoke container publishes on (default: 127.0.0.1)
    CERESDB_PORT             — Published server port (default: 5440)
    IMAGE_NAME               — Tag for the built server image (default: ceresdb-server:latest)
    SERVER_NAME              — Fixed container instance name for the smoke lane (default: standalone-server)
    LOCK_FILE                — Dependency lock file checked for drift (default: Cargo.lock)
    TOOLCHAIN_FILE           — File pinning the compiler toolchain (default: rust-toolchain)
    CACHE_DIR                — Root directory of the dependency cache
    PIPELINE_TIMEOUT_MINUTES — Hard wall-clock bound for one pipeline run (default: 60)
    SETTLE_DELAY_SECONDS     — Fixed readiness delay for the "settle" strategy (default: 10)
    READINESS_STRATEGY       — "poll" (HTTP health poll, default) or "settle" (fixed delay)
    READINESS_TIMEOUT_SECONDS — Upper bound for the "poll" strategy (default: 60)
    MIN_FREE_DISK_GB         — Built-in free space assertion, 0 disables it (default: 0)
    RESULTS_DIR              — Where finished runs are serialized (default: results)
    LOG_DIR                  — Where per-stage output is captured (default: logs)

Timeout Philosophy:
    PIPELINE_TIMEOUT_MINUTES bounds the whole run, not a single stage. Each
    subprocess receives whatever is left of the budget as its own timeout, so
    a stage still executing at the deadline is killed and the run is reported
    as timed out.

These values are the defaults for ``PipelineSettings``; a ``release-gate.yml``
in the checkout overrides them per repository.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Smoke lane
SERVER_ADDR = os.getenv("CERESDB_ADDR", "127.0.0.1")
SERVER_PORT = int(os.getenv("CERESDB_PORT", 5440))
IMAGE_NAME = os.getenv("IMAGE_NAME", "ceresdb-server:latest")
SERVER_NAME = os.getenv("SERVER_NAME", "standalone-server")

# Readiness
READINESS_STRATEGY = os.getenv("READINESS_STRATEGY", "poll")
SETTLE_DELAY_SECONDS = float(os.getenv("SETTLE_DELAY_SECONDS", 10))
READINESS_TIMEOUT_SECONDS = float(os.getenv("READINESS_TIMEOUT_SECONDS", 60))

# Checkout inputs
LOCK_FILE = os.getenv("LOCK_FILE", "Cargo.lock")
TOOLCHAIN_FILE = os.getenv("TOOLCHAIN_FILE", "rust-toolchain")

# Dependency cache
CACHE_DIR = os.getenv(
    "CACHE_DIR", os.path.join(os.path.expanduser("~"), ".cache", "release-gate")
)

# Whole-run timeout in minutes
PIPELINE_TIMEOUT_MINUTES = float(os.getenv("PIPELINE_TIMEOUT_MINUTES", 60))

# Disk quota
MIN_FREE_DISK_GB = float(os.getenv("MIN_FREE_DISK_GB", 0))

# Output locations
RESULTS_DIR = os.getenv("RESULTS_DIR", "results")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# Environment exported to every build/test subprocess
BUILD_ENV: dict[str, str] = {
    "RUSTFLAGS": os.getenv("RUSTFLAGS", "-C debuginfo=1"),
    "CARGO_TERM_COLOR": os.getenv("CARGO_TERM_COLOR", "always"),
    "RUST_BACKTRACE": os.getenv("RUST_BACKTRACE", "1"),
}
