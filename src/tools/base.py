# src/tools/base.py
from abc import ABC, abstractmethod
from typing import List


class SecurityToolAdapter(ABC):
    #: Executable the adapter drives
    binary: str

    @abstractmethod
    def run_scan(self, args: List[str], timeout: float = None) -> dict:
        """
        Run the tool and return {"success": True, "result": ...} or {"success": False, "error": ...}.
        """
