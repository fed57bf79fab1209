from __future__ import annotations

from functools import lru_cache
from typing import List
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8')

    # Database
    database_url: str = Field(..., alias='DATABASE_URL')

    # Web
    web_host: str = Field('127.0.0.1', alias='WEB_HOST')
    web_port: int = Field(8000, alias='WEB_PORT')
    web_secret: str = Field('change-me', alias='WEB_SECRET')
    public_base_url: str = Field('http://localhost:8000', alias='PUBLIC_BASE_URL')
    frontend_url: str = Field('http://localhost:5173', alias='FRONTEND_URL')
    cors_origins: str = Field('', alias='CORS_ORIGINS')

    # Auth
    jwt_secret: str = Field('change-me', alias='JWT_SECRET')
    jwt_algorithm: str = Field('HS256', alias='JWT_ALGORITHM')
    access_token_expire_minutes: int = Field(60 * 24 * 7, alias='ACCESS_TOKEN_EXPIRE_MINUTES')

    # RunPod
    runpod_api_key: str = Field('', alias='RUNPOD_API_KEY')
    runpod_api_url: str = Field('', alias='RUNPOD_API_URL')
    runpod_create_api_url: str = Field('', alias='RUNPOD_CREATE_API_URL')
    runpod_outpaint_api_url: str = Field('', alias='RUNPOD_OUTPAINT_API_URL')
    runpod_inpaint_api_url: str = Field('', alias='RUNPOD_INPAINT_API_URL')
    runpod_refine_api_url: str = Field('', alias='RUNPOD_REFINE_API_URL')
    runpod_webhook_token: str = Field('', alias='RUNPOD_WEBHOOK_TOKEN')

    # Replicate
    replicate_api_token: str = Field('', alias='REPLICATE_API_TOKEN')
    replicate_upscale_version: str = Field(
        'dfad41707589d68ecdccd1dfa600d55a208f9310748e44bfe35b4a6291453d5e',
        alias='REPLICATE_UPSCALE_VERSION',
    )
    replicate_webhook_secret: str = Field('', alias='REPLICATE_WEBHOOK_SECRET')

    # Mask service
    fast_api_url: str = Field('', alias='FAST_API_URL')
    mask_max_image_bytes: int = Field(10 * 1024 * 1024, alias='MASK_MAX_IMAGE_BYTES')
    mask_callback_token: str = Field('', alias='MASK_CALLBACK_TOKEN')

    # Stripe
    stripe_secret_key: str = Field('', alias='STRIPE_SECRET_KEY')
    stripe_webhook_secret: str = Field('', alias='STRIPE_WEBHOOK_SECRET')

    # Storage (S3 compatible)
    storage_bucket: str = Field('', alias='STORAGE_BUCKET')
    storage_endpoint_url: str = Field('', alias='STORAGE_ENDPOINT_URL')
    storage_region: str = Field('', alias='STORAGE_REGION')
    storage_access_key_id: str = Field('', alias='STORAGE_ACCESS_KEY_ID')
    storage_secret_access_key: str = Field('', alias='STORAGE_SECRET_ACCESS_KEY')
    storage_public_base_url: str = Field('', alias='STORAGE_PUBLIC_BASE_URL')
    result_hosts: str = Field(
        'replicate.delivery,pbxt.replicate.delivery,storage.googleapis.com',
        alias='RESULT_HOSTS',
    )

    # Generation
    max_variations: int = Field(4, alias='MAX_VARIATIONS')
    max_tweak_variations: int = Field(2, alias='MAX_TWEAK_VARIATIONS')
    credits_per_variation: int = Field(1, alias='CREDITS_PER_VARIATION')
    max_upload_bytes: int = Field(5 * 1024 * 1024, alias='MAX_UPLOAD_BYTES')
    upscale_max_source_px: int = Field(2000, alias='UPSCALE_MAX_SOURCE_PX')
    processed_image_target_px: int = Field(2000, alias='PROCESSED_IMAGE_TARGET_PX')
    per_user_generate_cooldown_seconds: int = Field(2, alias='PER_USER_GENERATE_COOLDOWN_SECONDS')
    max_prompt_length: int = Field(4000, alias='MAX_PROMPT_LENGTH')

    # Reconciliation
    reconciler_enabled: bool = Field(True, alias='RECONCILER_ENABLED')
    reconciler_interval_seconds: int = Field(30, alias='RECONCILER_INTERVAL_SECONDS')
    reconciler_batch_size: int = Field(50, alias='RECONCILER_BATCH_SIZE')
    global_max_poll_concurrency: int = Field(10, alias='GLOBAL_MAX_POLL_CONCURRENCY')
    job_timeout_seconds: int = Field(480, alias='JOB_TIMEOUT_SECONDS')
    max_status_check_failures: int = Field(5, alias='MAX_STATUS_CHECK_FAILURES')
    refund_on_fail: bool = Field(True, alias='REFUND_ON_FAIL')

    # Subscriptions
    max_payment_failures: int = Field(3, alias='MAX_PAYMENT_FAILURES')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')

    def cors_origin_list(self) -> List[str]:
        if not self.cors_origins:
            return []
        return [x.strip() for x in self.cors_origins.split(',') if x.strip()]

    def allowed_result_hosts(self) -> List[str]:
        hosts = [x.strip().lower() for x in self.result_hosts.split(',') if x.strip()]
        for url in (self.storage_public_base_url, self.storage_endpoint_url):
            host = urlparse(url).hostname if url else None
            if host:
                hosts.append(host.lower())
        if self.storage_bucket and not self.storage_endpoint_url:
            # Default AWS virtual-hosted bucket address.
            hosts.append(f'{self.storage_bucket.lower()}.s3.amazonaws.com')
        # Preserve order while removing duplicates.
        return list(dict.fromkeys(hosts))

    def is_allowed_result_url(self, url: str) -> bool:
        parsed = urlparse(url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        return any(host == allowed or host.endswith(f'.{allowed}') for allowed in self.allowed_result_hosts())

    def webhook_url(self, path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{path.lstrip('/')}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
