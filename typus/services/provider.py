from __future__ import annotations

from typing import Any, Dict, List, Protocol


PROCESSING = 'PROCESSING'
COMPLETED = 'COMPLETED'
FAILED = 'FAILED'

TERMINAL_STATUSES = {COMPLETED, FAILED}


class ProviderClient(Protocol):
    name: str

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        ...

    def normalize_status(self, record: Dict[str, Any]) -> str:
        ...

    def provider_status(self, record: Dict[str, Any]) -> str:
        ...

    def extract_output_urls(self, record: Dict[str, Any]) -> List[str]:
        ...

    def extract_error(self, record: Dict[str, Any]) -> str:
        ...
