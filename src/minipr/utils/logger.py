from __future__ import annotations

from datetime import datetime
from pathlib import Path


def write_message_to_log_file(message: str, cfg) -> None:
    """Appends a timestamped message to the run log at `cfg.LOG_PATH`."""
    log_path = Path(cfg.LOG_PATH)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a") as log_file:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        log_file.write(f"[{timestamp}]  {message}\n")
