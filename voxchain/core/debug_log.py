"""
Debug logging for pipeline runs.

Writes completion requests, responses and run summaries as JSON files into a
session folder under {project_root}/.voxchain/debug/ when VC_DEBUG=1.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .timing import is_debug_enabled


class DebugLogger:
    """
    Handles detailed debug logging for pipeline execution.

    Logs are stored in {project_root}/.voxchain/debug/session_<timestamp>/.
    """

    def __init__(self, project_root: str = ".", enabled: Optional[bool] = None):
        """
        Initialize debug logger.

        Args:
            project_root: Project root directory for log storage
            enabled: Override debug enable flag, uses VC_DEBUG env var if None
        """
        self.project_root = project_root
        self.enabled = enabled if enabled is not None else is_debug_enabled()
        self.session_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.session_dir: Optional[Path] = None

        if self.enabled:
            self._setup_log_directory()

    def _setup_log_directory(self) -> None:
        """Create debug log directory structure."""
        self.session_dir = Path(self.project_root) / ".voxchain" / "debug" / f"session_{self.session_id}"
        self.session_dir.mkdir(parents=True, exist_ok=True)

    def _write(self, step: str, data: Dict[str, Any]) -> None:
        if not self.enabled or self.session_dir is None:
            return

        timestamp = datetime.now().isoformat()
        log_data = {"timestamp": timestamp, "session_id": self.session_id, "step": step, **data}
        log_file = self.session_dir / f"{step}_{timestamp.replace(':', '-').replace('.', '_')}.json"

        with open(log_file, "w", encoding="utf-8") as f:
            json.dump(log_data, f, indent=2, ensure_ascii=False, default=str)

    def log_completion_request(self, label: str, model: str, system_prompt: str, user_prompt: str, optimized: bool) -> None:
        """Log the prompts sent for one unit or optimized chain."""
        self._write(
            "completion_request",
            {
                "label": label,
                "model": model,
                "optimized": optimized,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
            },
        )

    def log_completion_response(self, label: str, response_content: str, input_text: str) -> None:
        """Log the raw response next to the text that entered the step."""
        self._write(
            "completion_response",
            {
                "label": label,
                "response_content": response_content,
                "input_text": input_text,
                "response_length": len(response_content),
                "input_length": len(input_text),
            },
        )

    def log_run_summary(self, pipeline_name: str, summary: Dict[str, Any]) -> None:
        """Log the outcome of a complete pipeline run."""
        self._write("run_summary", {"pipeline": pipeline_name, **summary})


# Global debug logger instance
_debug_logger: Optional[DebugLogger] = None


def get_debug_logger(project_root: str = ".") -> DebugLogger:
    """Get or create the global debug logger for a project root."""
    global _debug_logger
    if _debug_logger is None or _debug_logger.project_root != project_root or _debug_logger.enabled != is_debug_enabled():
        _debug_logger = DebugLogger(project_root)
    return _debug_logger
