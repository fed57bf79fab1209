"""Shared fixtures: a throwaway SQLite database, vendor fakes and factories."""
from __future__ import annotations

import io
import os
from datetime import timedelta
from typing import Any, Dict, List

os.environ.setdefault('DATABASE_URL', 'sqlite+aiosqlite:///./typus-test.db')
os.environ['RECONCILER_ENABLED'] = 'false'
os.environ['PER_USER_GENERATE_COOLDOWN_SECONDS'] = '0'
os.environ['FAST_API_URL'] = 'http://masks.test'
os.environ['PUBLIC_BASE_URL'] = 'https://api.typus.test'
os.environ['STRIPE_WEBHOOK_SECRET'] = 'whsec_test'

import httpx
import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from typus.config import get_settings
from typus.db.base import Base
from typus.db.models import GeneratedImage, GenerationBatch, InputImage, Subscription, User
from typus.services.credits import CreditsService
from typus.services.masks import MaskServiceClient
from typus.services.replicate_client import ReplicateClient, ReplicateError
from typus.services.runpod_client import RunPodClient, RunPodError
from typus.services.storage import ObjectStorage
from typus.utils.time import utcnow

get_settings.cache_clear()


def png_bytes(width: int = 64, height: int = 64, color: str = 'red') -> bytes:
    buf = io.BytesIO()
    Image.new('RGB', (width, height), color).save(buf, format='PNG')
    return buf.getvalue()


class FakeRunPod(RunPodClient):
    """Records submissions instead of calling RunPod."""

    def __init__(self) -> None:
        super().__init__(client=httpx.AsyncClient(transport=httpx.MockTransport(self._refuse)))
        self.submitted: List[Dict[str, Any]] = []
        self.records: Dict[str, Dict[str, Any]] = {}
        self.fail_submit = False
        self.fail_status = False

    @staticmethod
    def _refuse(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async def _submit(self, operation: str, webhook: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_submit:
            raise RunPodError('RunPod outage', 503)
        self.submitted.append({'operation': operation, 'webhook': webhook, 'input': payload})
        return {'id': f'rp-{len(self.submitted)}', 'status': 'IN_QUEUE'}

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        if self.fail_status:
            raise RunPodError('status unavailable', 503)
        return self.records.get(job_id, {'id': job_id, 'status': 'IN_PROGRESS'})


class FakeReplicate(ReplicateClient):
    def __init__(self) -> None:
        super().__init__(client=httpx.AsyncClient(transport=httpx.MockTransport(FakeRunPod._refuse)))
        self.created: List[Dict[str, Any]] = []
        self.records: Dict[str, Dict[str, Any]] = {}
        self.fail_submit = False

    async def create_upscale(self, webhook, image, prompt='', options=None):
        if self.fail_submit:
            raise ReplicateError('replicate down', 502)
        self.created.append({'webhook': webhook, 'input': self.build_upscale_input(image, prompt, options)})
        return {'id': f'pred-{len(self.created)}', 'status': 'starting'}

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        return self.records.get(job_id, {'id': job_id, 'status': 'processing'})


class FakeS3:
    def __init__(self) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[Key] = {'body': Body, 'content_type': ContentType}

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://signed.test/{Params['Key']}?expires={ExpiresIn}"

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)


class FakeMaskClient(MaskServiceClient):
    def __init__(self) -> None:
        super().__init__(client=httpx.AsyncClient(transport=httpx.MockTransport(FakeRunPod._refuse)))
        self.available = True
        self.requests: List[Dict[str, Any]] = []

    async def ping(self) -> bool:
        return self.available

    async def request_color_filter(self, image, input_image_id, callback_url):
        self.requests.append({'size': len(image), 'input_image_id': input_image_id, 'callback_url': callback_url})
        return {'status': 'accepted'}


@pytest.fixture
def settings():
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'typus.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session


@pytest.fixture
def runpod():
    return FakeRunPod()


@pytest.fixture
def replicate():
    return FakeReplicate()


@pytest.fixture
def s3():
    return FakeS3()


@pytest.fixture
def storage(s3):
    storage = ObjectStorage(client=s3)
    storage.bucket = 'typus-test'
    storage.public_base_url = 'https://cdn.typus.test'
    return storage


@pytest.fixture
def mask_client():
    return FakeMaskClient()


@pytest_asyncio.fixture
async def http():
    image = png_bytes(120, 80, 'blue')

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith('/missing.png'):
            return httpx.Response(404)
        return httpx.Response(200, content=image, headers={'content-type': 'image/png'})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


async def create_user(
    session,
    email: str = 'architect@example.com',
    credits: int = 0,
    plan_type: str | None = 'EXPLORER',
    status: str = 'ACTIVE',
    is_student: bool = False,
) -> User:
    now = utcnow()
    user = User(
        email=email,
        hashed_password='x',
        full_name='Test Architect',
        is_student=is_student,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.flush()
    if plan_type:
        session.add(
            Subscription(
                user_id=user.id,
                plan_type=plan_type,
                billing_cycle='MONTHLY',
                status=status,
                credits_per_period=150,
                stripe_subscription_id=f'sub_{user.id}',
                current_period_start=now,
                current_period_end=now + timedelta(days=30),
                created_at=now,
                updated_at=now,
            )
        )
    if credits:
        await CreditsService(session).add_transaction(
            user.id, credits, 'SUBSCRIPTION_CREDIT', description='test grant'
        )
    await session.commit()
    return user


async def create_input_image(session, user_id: int, width: int = 1024, height: int = 768) -> InputImage:
    now = utcnow()
    image = InputImage(
        user_id=user_id,
        file_name='house.png',
        original_url='https://cdn.typus.test/uploads/original/house.png',
        processed_url='https://cdn.typus.test/uploads/processed/house.png',
        thumbnail_url='https://cdn.typus.test/uploads/thumbnails/house.jpg',
        width=width,
        height=height,
        file_size=1000,
        mask_status='none',
        created_at=now,
        updated_at=now,
    )
    session.add(image)
    await session.commit()
    return image


async def create_completed_image(
    session,
    user_id: int,
    input_image_id: int | None = None,
    width: int = 1024,
    height: int = 768,
    source_image_id: int | None = None,
) -> GeneratedImage:
    now = utcnow()
    batch = GenerationBatch(
        user_id=user_id,
        input_image_id=input_image_id,
        module_type='CREATE',
        status='COMPLETED',
        prompt='modern villa',
        total_variations=1,
        credits_used=1,
        meta={},
        created_at=now,
        updated_at=now,
    )
    session.add(batch)
    await session.flush()
    image = GeneratedImage(
        batch_id=batch.id,
        user_id=user_id,
        variation_number=1,
        status='COMPLETED',
        provider='runpod',
        provider_job_id=f'done-{batch.id}',
        processed_image_url='https://cdn.typus.test/generated/create/villa.png',
        original_image_url='https://cdn.typus.test/generated/create/villa.png',
        width=width,
        height=height,
        original_base_image_id=input_image_id,
        source_image_id=source_image_id,
        meta={},
        created_at=now,
        updated_at=now,
        completed_at=now,
    )
    session.add(image)
    await session.commit()
    return image
