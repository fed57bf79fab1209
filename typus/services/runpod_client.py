from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from typus.config import get_settings
from typus.services.provider import COMPLETED, FAILED, PROCESSING
from typus.utils.logging import get_logger


logger = get_logger('runpod')

MASK_COLORS = (
    'yellow', 'red', 'green', 'blue', 'cyan', 'magenta', 'orange', 'purple',
    'pink', 'lightblue', 'marron', 'olive', 'teal', 'navy', 'gold',
)

STYLE_PREFIX = 'Pen and ink, illustrated by hergé, studio ghibli, stunning color scheme, masterpiece'
STYLE_SUFFIX = (
    'saturated full colors, neon lights, blurry jagged edges, noise, and pixelation, oversaturated, '
    'unnatural colors or gradients overly smooth or plastic-like surfaces, imperfections. deformed, '
    'watermark, low quality, worst quality, blurry, soft, noisy'
)

REGIONAL_PROMPT_DEFAULTS: Dict[str, Any] = {
    'steps_ksampler1': 6,
    'cfg_ksampler1': 3,
    'denoise_ksampler1': 1,
    'steps_ksampler2': 4,
    'cfg_ksampler2': 2,
    'denoise_ksampler2': 0.3,
    'canny_strength': 1,
    'canny_start': 0,
    'canny_end': 1,
    'depth_strength': 0.4,
    'depth_start': 0,
    'depth_end': 0.5,
    'lora_names': ['add-detail.safetensors', 'nunu-XL.safetensors'],
    'lora_strength': [1, 0.5],
    'lora_clip': [1, 0.6],
    'model': 'realvisxlLightning.safetensors',
    'seed': '1337',
    'upscale': 'Yes',
    'style': 'No',
}

SUCCESS_STATUSES = {'COMPLETED'}
FAIL_STATUSES = {'FAILED', 'CANCELLED', 'TIMED_OUT'}


class RunPodError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RunPodClient:
    name = 'runpod'

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.api_key = settings.runpod_api_key
        self.api_url = settings.runpod_api_url.rstrip('/')
        self.create_api_url = settings.runpod_create_api_url.rstrip('/')
        self.outpaint_api_url = settings.runpod_outpaint_api_url.rstrip('/')
        self.inpaint_api_url = settings.runpod_inpaint_api_url.rstrip('/')
        self.refine_api_url = settings.runpod_refine_api_url.rstrip('/')
        self._client = client or httpx.AsyncClient(timeout=30)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

    def api_url_for(self, operation: str = 'create') -> str:
        operation = (operation or '').lower()
        if operation in ('create', 'regional_prompt'):
            return self.create_api_url or self.api_url
        if operation == 'outpaint':
            return self.outpaint_api_url or self.api_url
        if operation == 'inpaint':
            return self.inpaint_api_url or self.api_url
        if operation == 'refine':
            return self.refine_api_url or self.api_url
        return self.api_url

    async def _submit(self, operation: str, webhook: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.api_url_for(operation)
        if not self.api_key or not url:
            raise RunPodError('runpod_not_configured', 503)
        body = {'webhook': webhook, 'input': payload}
        try:
            resp = await self._client.post(url, headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise RunPodError(f'RunPod request failed: {exc}', 503) from exc
        if resp.status_code >= 400:
            raise RunPodError(f'RunPod {operation} error {resp.status_code}: {resp.text}', resp.status_code)
        data = resp.json()
        if not isinstance(data, dict) or not data.get('id'):
            raise RunPodError('invalid_runpod_response', 502)
        logger.info('runpod_job_submitted', operation=operation, runpod_id=data['id'], job_id=payload.get('job_id'))
        return data

    @staticmethod
    def build_regional_prompt_input(
        *,
        prompt: str,
        negative_prompt: str,
        raw_image: str,
        job_id: int,
        uuid: str,
        request_group: str,
        regions: Optional[Dict[str, Dict[str, str]]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        full_prompt = prompt or f'{STYLE_PREFIX}, {STYLE_SUFFIX}'
        payload: Dict[str, Any] = {
            'prompt': full_prompt,
            'negative_prompt': negative_prompt,
            **REGIONAL_PROMPT_DEFAULTS,
            'raw_image': raw_image,
            'job_id': job_id,
            'uuid': str(uuid),
            'requestGroup': request_group,
            'task': 'regional_prompt',
        }
        for key, value in (overrides or {}).items():
            if key in REGIONAL_PROMPT_DEFAULTS:
                payload[key] = value

        for color in MASK_COLORS:
            region = (regions or {}).get(color) or {}
            mask = (region.get('mask') or '').strip()
            region_prompt = (region.get('prompt') or '').strip()
            if mask and region_prompt:
                payload[f'{color}_mask'] = mask
                payload[f'{color}_prompt'] = region_prompt

        if not payload.get('yellow_mask') or not payload.get('yellow_prompt'):
            payload['yellow_mask'] = raw_image
            payload['yellow_prompt'] = prompt or ''
        return payload

    async def generate_image(self, webhook: str, **kwargs: Any) -> Dict[str, Any]:
        payload = self.build_regional_prompt_input(**kwargs)
        return await self._submit('regional_prompt', webhook, payload)

    async def generate_outpaint(
        self,
        webhook: str,
        *,
        image: str,
        top: float,
        bottom: float,
        left: float,
        right: float,
        job_id: int,
        uuid: str,
        prompt: str = '',
        seed: int = 123456777,
    ) -> Dict[str, Any]:
        payload = {
            'prompt': prompt,
            'seed': seed,
            'steps': 30,
            'cfg': 3.5,
            'denoise': 1,
            'top': round(top),
            'bottom': round(bottom),
            'right': round(right),
            'left': round(left),
            'image': image,
            'job_id': job_id,
            'uuid': str(uuid),
            'task': 'outpaint',
        }
        return await self._submit('outpaint', webhook, payload)

    async def generate_inpaint(
        self,
        webhook: str,
        *,
        image: str,
        mask: str,
        job_id: int,
        uuid: str,
        prompt: str = '',
        negative_prompt: str = '',
        seed: int = 123456777,
    ) -> Dict[str, Any]:
        payload = {
            'prompt': prompt,
            'negative_prompt': negative_prompt,
            'seed': seed,
            'steps': 30,
            'cfg': 7.5,
            'denoise': 1,
            'image': image,
            'mask': mask,
            'job_id': job_id,
            'uuid': str(uuid),
            'task': 'inpaint',
        }
        return await self._submit('inpaint', webhook, payload)

    async def generate_refine(
        self,
        webhook: str,
        *,
        image: str,
        job_id: int,
        uuid: str,
        request_group: str,
        settings: Dict[str, Any],
    ) -> Dict[str, Any]:
        resolution = settings.get('resolution') or {}
        payload = {
            'image': image,
            'width': int(resolution.get('width') or 1024),
            'height': int(resolution.get('height') or 1024),
            'scale_factor': settings.get('scaleFactor', 1),
            'ai_strength': settings.get('aiStrength', 12),
            'resemblance': settings.get('resemblance', 12),
            'clarity': settings.get('clarity', 12),
            'sharpness': settings.get('sharpness', 12),
            'match_color': bool(settings.get('matchColor', True)),
            'job_id': job_id,
            'uuid': str(uuid),
            'request_group': request_group,
            'task': 'refine',
        }
        return await self._submit('refine', webhook, payload)

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        if not self.api_key or not self.api_url:
            raise RunPodError('runpod_not_configured', 503)
        try:
            resp = await self._client.get(f'{self.api_url}/{job_id}', headers=self._headers())
        except httpx.HTTPError as exc:
            raise RunPodError(f'RunPod status request failed: {exc}', 503) from exc
        if resp.status_code >= 400:
            raise RunPodError(f'RunPod status error {resp.status_code}: {resp.text}', resp.status_code)
        return resp.json()

    @staticmethod
    def provider_status(record: Dict[str, Any]) -> str:
        return str(record.get('status') or '').strip().upper()

    def normalize_status(self, record: Dict[str, Any]) -> str:
        status = self.provider_status(record)
        if status in SUCCESS_STATUSES:
            output = record.get('output')
            if isinstance(output, dict) and str(output.get('status') or '').lower() in ('failed', 'error'):
                return FAILED
            return COMPLETED
        if status in FAIL_STATUSES:
            return FAILED
        return PROCESSING

    @staticmethod
    def extract_job_id(record: Dict[str, Any]) -> Optional[int]:
        data_input = record.get('input') if isinstance(record.get('input'), dict) else {}
        raw = data_input.get('job_id')
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    @staticmethod
    def extract_output_urls(record: Dict[str, Any]) -> List[str]:
        urls: List[str] = []

        def extend_from(value: Any) -> None:
            if isinstance(value, str):
                cleaned = value.strip()
                if cleaned.startswith(('http://', 'https://')):
                    urls.append(cleaned)
                return
            if isinstance(value, list):
                for item in value:
                    extend_from(item)

        output = record.get('output')
        if isinstance(output, dict):
            extend_from(output.get('imageUrl'))
            extend_from(output.get('image_url'))
            extend_from(output.get('output'))
            extend_from(output.get('images'))
        else:
            extend_from(output)

        # Preserve order while removing duplicates.
        return list(dict.fromkeys(urls))

    @staticmethod
    def extract_error(record: Dict[str, Any]) -> str:
        output = record.get('output')
        if isinstance(output, dict) and output.get('error'):
            return str(output['error'])[:255]
        return str(record.get('error') or record.get('status') or 'runpod_failed')[:255]
