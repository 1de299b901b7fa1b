"""コア - プローブとタイムアウト制御"""

from agentlink.core.probe import ProbeEngine, build_probe_url
from agentlink.core.timeouts import (
    EnvSnapshot,
    best_effort,
    env_handoff_lock,
    run_with_timeout,
    scoped_env,
)

__all__ = [
    "EnvSnapshot",
    "ProbeEngine",
    "best_effort",
    "build_probe_url",
    "env_handoff_lock",
    "run_with_timeout",
    "scoped_env",
]
