# src/tools/trivy_adapter.py
from .base import SecurityToolAdapter
import subprocess
import json
import logging

logger = logging.getLogger(__name__)


class TrivyAdapter(SecurityToolAdapter):
    binary = "trivy"

    def image_args(self, reference: str) -> list:
        return ["image", "--quiet", reference]

    def run_scan(self, args, timeout=None) -> dict:
        cmd = [self.binary] + args + ["--format", "json"]
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError:
            return {"success": False, "error": f"{self.binary} executable not found"}
        except subprocess.TimeoutExpired:
            return {"success": False, "error": f"{self.binary} timed out after {timeout}s"}
        if result.returncode != 0:
            return {"success": False, "error": result.stderr.strip() or f"{self.binary} exited with {result.returncode}"}
        try:
            return {"success": True, "result": json.loads(result.stdout)}
        except json.JSONDecodeError:
            return {"success": False, "error": "Failed to parse Trivy output as JSON."}
