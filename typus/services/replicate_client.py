from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Dict, List

import httpx

from typus.config import get_settings
from typus.services.provider import COMPLETED, FAILED, PROCESSING
from typus.utils.logging import get_logger


logger = get_logger('replicate')

PREDICTIONS_URL = 'https://api.replicate.com/v1/predictions'

UPSCALE_DEFAULTS: Dict[str, Any] = {
    'seed': 1309,
    'dynamic': 2,
    'sd_model': 'juggernaut_reborn.safetensors [338b85bc4f]',
    'scheduler': 'DPM++ 3M SDE Karras',
    'creativity': 0.5,
    'lora_links': 'https://civitai.com/api/download/models/78018',
    'downscaling': False,
    'resemblance': 0.6,
    'scale_factor': 2,
    'tiling_width': 112,
    'tiling_height': 112,
    'negative_prompt': '(worst quality, low quality:2) face, person, woman, multiple heads multiple eyes',
    'num_inference_steps': 18,
    'downscaling_resolution': 768,
}

SUCCESS_STATUSES = {'succeeded'}
FAIL_STATUSES = {'failed', 'canceled'}


class ReplicateError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReplicateClient:
    name = 'replicate'

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.api_token = settings.replicate_api_token
        self.upscale_version = settings.replicate_upscale_version
        self._client = client or httpx.AsyncClient(timeout=30)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Token {self.api_token}',
            'Content-Type': 'application/json',
        }

    @staticmethod
    def build_upscale_input(image: str, prompt: str = '', options: Dict[str, Any] | None = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'image': image, 'prompt': prompt, **UPSCALE_DEFAULTS}
        for key, value in (options or {}).items():
            if key in UPSCALE_DEFAULTS and value is not None:
                payload[key] = value
        return payload

    async def create_upscale(
        self,
        webhook: str,
        image: str,
        prompt: str = '',
        options: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        if not self.api_token:
            raise ReplicateError('replicate_not_configured', 503)
        body = {
            'version': self.upscale_version,
            'input': self.build_upscale_input(image, prompt, options),
            'webhook': webhook,
            'webhook_events_filter': ['completed'],
        }
        try:
            resp = await self._client.post(PREDICTIONS_URL, headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise ReplicateError(f'Replicate request failed: {exc}', 503) from exc
        if resp.status_code >= 400:
            raise ReplicateError(f'Replicate create error {resp.status_code}: {resp.text}', resp.status_code)
        data = resp.json()
        if not isinstance(data, dict) or not data.get('id'):
            raise ReplicateError('invalid_replicate_response', 502)
        logger.info('replicate_prediction_created', prediction_id=data['id'], status=data.get('status'))
        return data

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        if not self.api_token:
            raise ReplicateError('replicate_not_configured', 503)
        try:
            resp = await self._client.get(f'{PREDICTIONS_URL}/{job_id}', headers=self._headers())
        except httpx.HTTPError as exc:
            raise ReplicateError(f'Replicate status request failed: {exc}', 503) from exc
        if resp.status_code >= 400:
            raise ReplicateError(f'Replicate status error {resp.status_code}: {resp.text}', resp.status_code)
        return resp.json()

    @staticmethod
    def provider_status(record: Dict[str, Any]) -> str:
        return str(record.get('status') or '').strip().lower()

    def normalize_status(self, record: Dict[str, Any]) -> str:
        status = self.provider_status(record)
        if status in SUCCESS_STATUSES:
            return COMPLETED
        if status in FAIL_STATUSES:
            return FAILED
        return PROCESSING

    @staticmethod
    def extract_output_urls(record: Dict[str, Any]) -> List[str]:
        output = record.get('output')
        if isinstance(output, str):
            values = [output]
        elif isinstance(output, list):
            values = [item for item in output if isinstance(item, str)]
        else:
            values = []
        return list(dict.fromkeys(v.strip() for v in values if v.strip()))

    @staticmethod
    def extract_error(record: Dict[str, Any]) -> str:
        return str(record.get('error') or record.get('status') or 'replicate_failed')[:255]

    @staticmethod
    def compute_webhook_signature(webhook_id: str, timestamp: str, body: bytes, secret: str) -> str:
        key = secret.split('_', 1)[1] if secret.startswith('whsec_') else secret
        message = f'{webhook_id}.{timestamp}.'.encode('utf-8') + body
        digest = hmac.new(base64.b64decode(key), message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode('utf-8')

    @classmethod
    def verify_webhook_signature(
        cls,
        *,
        webhook_id: str,
        timestamp: str,
        body: bytes,
        signature_header: str,
        secret: str,
    ) -> bool:
        if not (webhook_id and timestamp and signature_header and secret):
            return False
        try:
            expected = cls.compute_webhook_signature(webhook_id, timestamp, body, secret)
        except ValueError:
            return False
        for entry in signature_header.split():
            _, _, signature = entry.partition(',')
            if signature and hmac.compare_digest(expected, signature):
                return True
        return False
