from __future__ import annotations

import asyncio
import json
import re
import secrets
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, File, Form, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.sessions import SessionMiddleware

from typus.canvas.expansion import ImageBounds, available_operations, expansion_info, predict_canvas_expansion
from typus.config import get_settings
from typus.db.models import InputImage
from typus.db.session import create_sessionmaker
from typus.security import create_access_token, user_id_from_token
from typus.services.credits import CreditsService, serialize_transaction
from typus.services.customization import CustomizationService
from typus.services.generation import GenerationService
from typus.services.images import ImagesService, serialize_input_image
from typus.services.masks import MaskServiceClient, MaskServiceError, MasksService
from typus.services.notifications import NotificationHub
from typus.services.plans import PlansService, user_currency
from typus.services.rate_limit import RateLimiter
from typus.services.reconciler import Reconciler
from typus.services.refine import RefineService
from typus.services.replicate_client import ReplicateClient, ReplicateError
from typus.services.runpod_client import RunPodClient, RunPodError
from typus.services.sessions import SessionsService, serialize_batch, serialize_image, serialize_session
from typus.services.storage import ObjectStorage, StorageError
from typus.services.subscriptions import (
    StripeGateway,
    StripeGatewayError,
    SubscriptionsService,
    serialize_subscription,
)
from typus.services.users import UsersService, serialize_user
from typus.utils.logging import get_logger


logger = get_logger('web')

VENDOR_ERRORS = (RunPodError, ReplicateError, MaskServiceError, StorageError, StripeGatewayError)

FORBIDDEN_CODES = {
    'subscription_required',
    'subscription_expired',
    'subscription_cancelled',
    'educational_requires_student',
    'account_disabled',
}

_CODE_RE = re.compile(r'^[a-z][a-z0-9_]*$')


def status_for_code(code: str) -> int:
    if code == 'insufficient_credits':
        return 402
    if code in FORBIDDEN_CODES:
        return 403
    if code.endswith('_not_found'):
        return 404
    if code in ('unauthorized', 'invalid_credentials'):
        return 401
    return 400


def error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, VENDOR_ERRORS):
        message = str(exc)
        status = exc.status_code if exc.status_code in (503, 504) else 502
        code = message if _CODE_RE.match(message) else 'upstream_error'
        logger.warning('vendor_error', kind=type(exc).__name__, status=exc.status_code, error=message)
        return JSONResponse({'error': code}, status_code=status)
    code = str(exc) or 'bad_request'
    return JSONResponse({'error': code}, status_code=status_for_code(code))


def _unauthorized() -> JSONResponse:
    return JSONResponse({'error': 'unauthorized'}, status_code=401)


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _request_user_id(request: Request) -> Optional[int]:
    raw = request.session.get('user_id')
    if raw is not None:
        return _int_or_none(raw)
    header = request.headers.get('authorization') or ''
    scheme, _, token = header.partition(' ')
    if scheme.lower() == 'bearer' and token.strip():
        return user_id_from_token(token.strip())
    return None


def create_app(
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    runpod: RunPodClient | None = None,
    replicate: ReplicateClient | None = None,
    stripe_gateway: StripeGateway | None = None,
    storage: ObjectStorage | None = None,
    mask_client: MaskServiceClient | None = None,
    http: httpx.AsyncClient | None = None,
) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title='Typus API')
    app.add_middleware(SessionMiddleware, secret_key=settings.web_secret, same_site='lax')
    origins = settings.cors_origin_list()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=['*'],
            allow_headers=['*'],
        )

    app.state.sessionmaker = sessionmaker or create_sessionmaker()
    app.state.hub = NotificationHub()
    app.state.runpod = runpod or RunPodClient()
    app.state.replicate = replicate or ReplicateClient()
    app.state.stripe = stripe_gateway or StripeGateway()
    app.state.storage = storage or ObjectStorage()
    app.state.mask_client = mask_client or MaskServiceClient()
    app.state.http = http
    app.state.reconciler = Reconciler(
        app.state.sessionmaker,
        runpod=app.state.runpod,
        replicate=app.state.replicate,
        hub=app.state.hub,
        storage=app.state.storage,
        http=http,
    )
    app.state.reconciler_task = None
    app.state.generate_limiter = RateLimiter(settings.per_user_generate_cooldown_seconds)

    @app.on_event('startup')
    async def startup() -> None:
        if settings.reconciler_enabled:
            app.state.reconciler_task = asyncio.create_task(app.state.reconciler.watch())
            logger.info('reconciler_started', interval=settings.reconciler_interval_seconds)

    @app.on_event('shutdown')
    async def shutdown() -> None:
        task = app.state.reconciler_task
        if task:
            task.cancel()
        for client in (app.state.runpod, app.state.replicate, app.state.mask_client):
            try:
                await client.close()
            except (RuntimeError, httpx.HTTPError) as exc:
                logger.warning('client_close_failed', error=str(exc))

    def images_service(session: AsyncSession) -> ImagesService:
        return ImagesService(session, storage=app.state.storage, http=app.state.http)

    def generation_service(session: AsyncSession) -> GenerationService:
        return GenerationService(
            session,
            runpod=app.state.runpod,
            replicate=app.state.replicate,
            hub=app.state.hub,
            images=images_service(session),
        )

    def masks_service(session: AsyncSession) -> MasksService:
        return MasksService(session, client=app.state.mask_client, hub=app.state.hub, http=app.state.http)

    def refine_service(session: AsyncSession) -> RefineService:
        return RefineService(session, images=images_service(session))

    # Auth

    @app.post('/api/auth/register')
    async def api_register(request: Request):
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        async with app.state.sessionmaker() as session:
            try:
                user = await UsersService(session).register(
                    payload.get('email') or '',
                    payload.get('password') or '',
                    payload.get('fullName') or '',
                    is_student=_as_bool(payload.get('isStudent')),
                )
            except ValueError as exc:
                return error_response(exc)
            await session.commit()
            request.session['user_id'] = user.id
            return {'user': serialize_user(user), 'token': create_access_token(user.id)}

    @app.post('/api/auth/login')
    async def api_login(request: Request):
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        async with app.state.sessionmaker() as session:
            try:
                user = await UsersService(session).authenticate(
                    payload.get('email') or '', payload.get('password') or ''
                )
            except ValueError as exc:
                return error_response(exc)
        request.session['user_id'] = user.id
        logger.info('user_logged_in', user_id=user.id)
        return {'user': serialize_user(user), 'token': create_access_token(user.id)}

    @app.post('/api/auth/logout')
    async def api_logout(request: Request):
        request.session.clear()
        return {'ok': True}

    @app.get('/api/me')
    async def api_me(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            credits = CreditsService(session)
            user = await credits.get_user(user_id)
            if not user:
                return JSONResponse({'error': 'user_not_found'}, status_code=404)
            return {
                'user': serialize_user(user),
                'credits': await credits.available_credits(user.id),
                'subscription': serialize_subscription(await credits.get_subscription(user.id)),
            }

    # Plans, subscription, credits

    @app.get('/api/plans')
    async def api_plans(
        educational: Optional[str] = None,
        country_code: Optional[str] = None,
        continent: Optional[str] = None,
    ):
        async with app.state.sessionmaker() as session:
            service = PlansService(session)
            flag = None if educational is None else _as_bool(educational)
            plans = await service.list_plans(flag)
            currency = user_currency(country_code, continent)
            return {'currency': currency, 'plans': service.format_plans_for_api(plans, currency)}

    @app.get('/api/subscription')
    async def api_subscription(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            subscription = await CreditsService(session).get_subscription(user_id)
            return {'subscription': serialize_subscription(subscription)}

    @app.post('/api/subscription/checkout')
    async def api_checkout(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request) or {}
        frontend = settings.frontend_url.rstrip('/')
        async with app.state.sessionmaker() as session:
            service = SubscriptionsService(session, app.state.stripe)
            user = await service.credits.get_user(user_id)
            if not user:
                return JSONResponse({'error': 'user_not_found'}, status_code=404)
            try:
                checkout = await service.create_checkout_session(
                    user,
                    str(payload.get('planType') or '').upper(),
                    str(payload.get('billingCycle') or 'MONTHLY').upper(),
                    _as_bool(payload.get('isEducational')),
                    success_url=payload.get('successUrl')
                    or f'{frontend}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}',
                    cancel_url=payload.get('cancelUrl') or f'{frontend}/subscription/cancel',
                    currency=user_currency(payload.get('countryCode'), payload.get('continent')),
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            await session.commit()
            return {'sessionId': checkout['id'], 'url': checkout['url']}

    @app.post('/api/subscription/portal')
    async def api_portal(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request) or {}
        async with app.state.sessionmaker() as session:
            service = SubscriptionsService(session, app.state.stripe)
            user = await service.credits.get_user(user_id)
            if not user:
                return JSONResponse({'error': 'user_not_found'}, status_code=404)
            try:
                url = await service.create_portal_session(
                    user, payload.get('returnUrl') or f"{settings.frontend_url.rstrip('/')}/subscription"
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            return {'url': url}

    @app.post('/api/subscription/cancel')
    async def api_cancel(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request) or {}
        async with app.state.sessionmaker() as session:
            service = SubscriptionsService(session, app.state.stripe)
            user = await service.credits.get_user(user_id)
            if not user:
                return JSONResponse({'error': 'user_not_found'}, status_code=404)
            try:
                subscription = await service.cancel(user, immediate=_as_bool(payload.get('immediate')))
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            await session.commit()
            return {'subscription': serialize_subscription(subscription)}

    @app.get('/api/credits/transactions')
    async def api_transactions(request: Request, limit: int = 50, offset: int = 0):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            credits = CreditsService(session)
            entries = await credits.list_transactions(user_id, min(max(1, limit), 200), max(0, offset))
            return {
                'available': await credits.available_credits(user_id),
                'transactions': [serialize_transaction(e) for e in entries],
            }

    # Input images

    @app.post('/api/images/upload')
    async def api_upload(request: Request, file: UploadFile = File(...)):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        data = await file.read(settings.max_upload_bytes + 1)
        async with app.state.sessionmaker() as session:
            try:
                image = await images_service(session).upload_input_image(
                    user_id, file.filename, file.content_type, data
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            await session.commit()
            return serialize_input_image(image)

    @app.get('/api/images/inputs')
    async def api_input_images(request: Request, limit: int = 50):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            images = await images_service(session).list_input_images(user_id, min(max(1, limit), 200))
            return {'images': [serialize_input_image(i) for i in images]}

    @app.get('/api/images/{image_id}')
    async def api_input_image(request: Request, image_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                image = await images_service(session).get_input_image(user_id, image_id)
            except ValueError as exc:
                return error_response(exc)
            return serialize_input_image(image)

    @app.get('/api/customization/options')
    async def api_customization_options():
        async with app.state.sessionmaker() as session:
            return {'categories': await CustomizationService(session).list_catalog()}

    # Masks

    @app.post('/api/masks/generate')
    async def api_masks_generate(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request) or {}
        input_image_id = _int_or_none(payload.get('inputImageId'))
        if input_image_id is None:
            return JSONResponse({'error': 'input_image_id_required'}, status_code=400)
        async with app.state.sessionmaker() as session:
            try:
                result = await masks_service(session).generate(
                    user_id, input_image_id, force=_as_bool(payload.get('force'))
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            await session.commit()
            return result

    @app.post('/api/masks/callback')
    async def api_masks_callback(request: Request, token: str = ''):
        expected = settings.mask_callback_token
        if expected and not secrets.compare_digest(token, expected):
            return JSONResponse({'error': 'invalid_token'}, status_code=401)
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        async with app.state.sessionmaker() as session:
            try:
                result = await masks_service(session).handle_callback(payload)
            except ValueError as exc:
                return error_response(exc)
            await session.commit()
            return {'ok': True, **result}

    @app.put('/api/masks/regions/{mask_id}/style')
    async def api_mask_style(request: Request, mask_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request) or {}
        async with app.state.sessionmaker() as session:
            try:
                region = await masks_service(session).update_style(
                    user_id,
                    mask_id,
                    customization_option_id=_int_or_none(payload.get('customizationOptionId')),
                    custom_text=payload.get('customText'),
                    sub_category_id=_int_or_none(payload.get('subCategoryId')),
                )
            except ValueError as exc:
                return error_response(exc)
            await session.commit()
            return region

    @app.get('/api/masks/{input_image_id}')
    async def api_masks(request: Request, input_image_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                return await masks_service(session).get_regions(user_id, input_image_id)
            except ValueError as exc:
                return error_response(exc)

    @app.delete('/api/masks/{input_image_id}')
    async def api_masks_clear(request: Request, input_image_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                await masks_service(session).clear(user_id, input_image_id)
            except ValueError as exc:
                return error_response(exc)
            await session.commit()
            return {'ok': True}

    # Generation

    def _throttled(user_id: int) -> Optional[JSONResponse]:
        limiter: RateLimiter = app.state.generate_limiter
        if limiter.allow(user_id):
            return None
        return JSONResponse(
            {'error': 'rate_limited', 'retryAfter': round(limiter.retry_after(user_id), 1)},
            status_code=429,
        )

    @app.post('/api/generate')
    async def api_generate(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        input_image_id = _int_or_none(payload.get('inputImageId'))
        if input_image_id is None:
            return JSONResponse({'error': 'input_image_id_required'}, status_code=400)
        throttled = _throttled(user_id)
        if throttled:
            return throttled
        async with app.state.sessionmaker() as session:
            try:
                batch = await generation_service(session).create(
                    user_id,
                    input_image_id,
                    payload.get('prompt') or '',
                    negative_prompt=payload.get('negativePrompt') or '',
                    variations=payload.get('variations', 1),
                    session_id=_int_or_none(payload.get('sessionId')),
                    options=payload.get('settings') if isinstance(payload.get('settings'), dict) else None,
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    @app.get('/api/batches')
    async def api_batches(request: Request, moduleType: Optional[str] = None, page: int = 1, limit: int = 20):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                return await SessionsService(session).list_batches(user_id, moduleType, page, limit)
            except ValueError as exc:
                return error_response(exc)

    @app.get('/api/batches/{batch_id}')
    async def api_batch(request: Request, batch_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                batch = await SessionsService(session).get_batch(user_id, batch_id)
            except ValueError as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    # Tweak

    @app.get('/api/tweak/operations')
    async def api_tweak_operations():
        return {'operations': available_operations(), 'info': expansion_info()}

    @app.post('/api/tweak/predict')
    async def api_tweak_predict(request: Request):
        payload = await _json_body(request) or {}
        try:
            result = predict_canvas_expansion(
                str(payload.get('operationType') or ''),
                ImageBounds.from_dict(payload.get('bounds')),
                payload.get('intensity'),
            )
        except ValueError as exc:
            return error_response(exc)
        return result.to_dict()

    @app.post('/api/tweak/outpaint')
    async def api_tweak_outpaint(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        throttled = _throttled(user_id)
        if throttled:
            return throttled
        async with app.state.sessionmaker() as session:
            try:
                batch = await generation_service(session).outpaint(
                    user_id,
                    payload.get('baseImageUrl') or '',
                    payload.get('originalBounds'),
                    canvas_bounds=payload.get('canvasBounds'),
                    variations=payload.get('variations', 1),
                    original_base_image_id=_int_or_none(payload.get('originalBaseImageId')),
                    source_image_id=_int_or_none(payload.get('sourceImageId')),
                    operation_type=payload.get('operationType'),
                    intensity=payload.get('intensity'),
                    prompt=payload.get('prompt') or '',
                    session_id=_int_or_none(payload.get('sessionId')),
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    @app.post('/api/tweak/inpaint')
    async def api_tweak_inpaint(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        throttled = _throttled(user_id)
        if throttled:
            return throttled
        async with app.state.sessionmaker() as session:
            try:
                batch = await generation_service(session).inpaint(
                    user_id,
                    payload.get('baseImageUrl') or '',
                    payload.get('maskImageUrl') or '',
                    payload.get('prompt') or '',
                    negative_prompt=payload.get('negativePrompt') or '',
                    variations=payload.get('variations', 1),
                    original_base_image_id=_int_or_none(payload.get('originalBaseImageId')),
                    source_image_id=_int_or_none(payload.get('sourceImageId')),
                    session_id=_int_or_none(payload.get('sessionId')),
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    @app.post('/api/tweak/add-image')
    async def api_tweak_add_image(
        request: Request,
        file: UploadFile = File(...),
        baseImageId: str = Form(''),
        position: str = Form(''),
        size: str = Form(''),
        sessionId: str = Form(''),
    ):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        base_image_id = _int_or_none(baseImageId)
        if base_image_id is None:
            return JSONResponse({'error': 'base_image_id_required'}, status_code=400)
        try:
            placement = json.loads(position or 'null'), json.loads(size or 'null')
        except ValueError:
            return JSONResponse({'error': 'placement_required'}, status_code=400)
        throttled = _throttled(user_id)
        if throttled:
            return throttled
        data = await file.read(settings.max_upload_bytes + 1)
        async with app.state.sessionmaker() as session:
            try:
                batch = await generation_service(session).add_image_to_canvas(
                    user_id,
                    base_image_id,
                    file.filename,
                    file.content_type,
                    data,
                    placement[0],
                    placement[1],
                    session_id=_int_or_none(sessionId),
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    @app.post('/api/batches/{batch_id}/cancel')
    async def api_batch_cancel(request: Request, batch_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                batch = await generation_service(session).cancel_batch(user_id, batch_id)
            except ValueError as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    @app.post('/api/upscale')
    async def api_upscale(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        image_id = _int_or_none(payload.get('imageId'))
        if image_id is None:
            return JSONResponse({'error': 'image_id_required'}, status_code=400)
        throttled = _throttled(user_id)
        if throttled:
            return throttled
        async with app.state.sessionmaker() as session:
            try:
                batch = await generation_service(session).upscale(
                    user_id,
                    image_id,
                    source_type=str(payload.get('sourceType') or 'generated'),
                    options=payload.get('options') if isinstance(payload.get('options'), dict) else None,
                    variations=payload.get('variations', 1),
                    prompt=payload.get('prompt') or '',
                    session_id=_int_or_none(payload.get('sessionId')),
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    # Refine

    @app.post('/api/refine/generate')
    async def api_refine_generate(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        image_id = _int_or_none(payload.get('imageId'))
        if image_id is None:
            return JSONResponse({'error': 'image_id_required'}, status_code=400)
        throttled = _throttled(user_id)
        if throttled:
            return throttled
        # Settings may be nested or sent flat next to imageId.
        refine_settings = payload.get('settings') if isinstance(payload.get('settings'), dict) else payload
        async with app.state.sessionmaker() as session:
            try:
                batch = await generation_service(session).refine(
                    user_id,
                    image_id,
                    source_type=str(payload.get('sourceType') or 'generated'),
                    settings=refine_settings,
                    variations=payload.get('variations', 1),
                    session_id=_int_or_none(payload.get('sessionId')),
                )
            except (ValueError, *VENDOR_ERRORS) as exc:
                return error_response(exc)
            return serialize_batch(batch, list(batch.variations))

    @app.get('/api/refine/operations/{base_image_id}')
    async def api_refine_operations(request: Request, base_image_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                operations = await refine_service(session).list_operations(user_id, base_image_id)
            except ValueError as exc:
                return error_response(exc)
            return {'operations': [serialize_image(i) for i in operations]}

    @app.get('/api/refine/settings/{image_id}')
    async def api_refine_settings(request: Request, image_id: int, sourceType: str = 'generated'):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                return await refine_service(session).get_settings(user_id, image_id, sourceType)
            except ValueError as exc:
                return error_response(exc)

    @app.post('/api/refine/settings')
    async def api_refine_settings_save(request: Request):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'error': 'invalid_payload'}, status_code=400)
        image_id = _int_or_none(payload.get('imageId'))
        if image_id is None:
            return JSONResponse({'error': 'image_id_required'}, status_code=400)
        raw = payload.get('settings') if isinstance(payload.get('settings'), dict) else payload
        async with app.state.sessionmaker() as session:
            try:
                saved = await refine_service(session).save_settings(
                    user_id, image_id, raw, source_type=str(payload.get('sourceType') or 'generated')
                )
            except ValueError as exc:
                return error_response(exc)
            await session.commit()
            return {'settings': saved, 'saved': True}

    # Sessions

    @app.get('/api/sessions')
    async def api_sessions(request: Request, limit: int = 50):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            return {'sessions': await SessionsService(session).list_sessions(user_id, min(max(1, limit), 200))}

    @app.get('/api/sessions/{session_id}')
    async def api_session(request: Request, session_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                return await SessionsService(session).get_session(user_id, session_id)
            except ValueError as exc:
                return error_response(exc)

    @app.patch('/api/sessions/{session_id}')
    async def api_session_rename(request: Request, session_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        payload = await _json_body(request) or {}
        async with app.state.sessionmaker() as session:
            try:
                creation = await SessionsService(session).rename_session(user_id, session_id, payload.get('name') or '')
            except ValueError as exc:
                return error_response(exc)
            await session.commit()
            return serialize_session(creation)

    @app.delete('/api/sessions/{session_id}')
    async def api_session_delete(request: Request, session_id: int):
        user_id = _request_user_id(request)
        if user_id is None:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                await SessionsService(session).delete_session(user_id, session_id)
            except ValueError as exc:
                return error_response(exc)
            await session.commit()
            return {'ok': True}

    # Webhooks

    @app.post('/api/webhooks/runpod')
    async def api_runpod_webhook(request: Request, token: str = ''):
        expected = settings.runpod_webhook_token
        if expected and not secrets.compare_digest(token, expected):
            return JSONResponse({'ok': False, 'error': 'invalid_token'}, status_code=401)
        payload = await _json_body(request)
        if payload is None:
            return JSONResponse({'ok': False, 'error': 'invalid_payload'}, status_code=400)
        try:
            result = await app.state.reconciler.process_runpod_webhook(payload)
        except ValueError as exc:
            code = str(exc)
            return JSONResponse({'ok': False, 'error': code}, status_code=status_for_code(code))
        return {'ok': True, **result}

    @app.post('/api/webhooks/replicate')
    async def api_replicate_webhook(request: Request):
        body = await request.body()
        secret = settings.replicate_webhook_secret
        if secret:
            valid = ReplicateClient.verify_webhook_signature(
                webhook_id=request.headers.get('webhook-id', ''),
                timestamp=request.headers.get('webhook-timestamp', ''),
                body=body,
                signature_header=request.headers.get('webhook-signature', ''),
                secret=secret,
            )
            if not valid:
                return JSONResponse({'ok': False, 'error': 'invalid_signature'}, status_code=401)
        try:
            payload = json.loads(body or b'{}')
        except ValueError:
            return JSONResponse({'ok': False, 'error': 'invalid_payload'}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({'ok': False, 'error': 'invalid_payload'}, status_code=400)
        try:
            result = await app.state.reconciler.process_replicate_webhook(payload)
        except ValueError as exc:
            code = str(exc)
            return JSONResponse({'ok': False, 'error': code}, status_code=status_for_code(code))
        return {'ok': True, **result}

    @app.post('/api/webhooks/stripe')
    async def api_stripe_webhook(request: Request):
        body = await request.body()
        gateway: StripeGateway = app.state.stripe
        try:
            gateway.construct_event(body, request.headers.get('stripe-signature', ''))
        except StripeGatewayError as exc:
            return JSONResponse({'error': str(exc)}, status_code=exc.status_code or 400)
        event = json.loads(body)
        async with app.state.sessionmaker() as session:
            try:
                result = await SubscriptionsService(session, gateway).handle_event(event)
            except StripeGatewayError as exc:
                return error_response(exc)
            await session.commit()
        logger.info('stripe_event_handled', type=event.get('type'), event_id=event.get('id'), result=result)
        return {'received': True, 'result': result}

    # Realtime

    async def _owns_input_image(user_id: int, input_image_id: Any) -> bool:
        image_id = _int_or_none(input_image_id)
        if image_id is None:
            return False
        async with app.state.sessionmaker() as session:
            owner = await session.scalar(select(InputImage.user_id).where(InputImage.id == image_id))
        return owner == user_id

    @app.websocket('/ws')
    async def ws_endpoint(websocket: WebSocket):
        user_id = _int_or_none(websocket.session.get('user_id'))
        if user_id is None:
            user_id = user_id_from_token(websocket.query_params.get('token', ''))
        if user_id is None:
            await websocket.close(code=4401)
            return
        await websocket.accept()
        hub: NotificationHub = app.state.hub
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    await websocket.send_json({'type': 'error', 'error': 'invalid_json'})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({'type': 'error', 'error': 'invalid_message'})
                    continue
                msg_type = str(message.get('type') or '')
                if msg_type.startswith('subscribe') and not await _owns_input_image(
                    user_id, message.get('inputImageId')
                ):
                    await websocket.send_json({'type': 'error', 'error': 'input_image_not_found'})
                    continue
                await hub.handle_message(websocket, message)
        except WebSocketDisconnect:
            pass
        finally:
            hub.disconnect(websocket)

    @app.get('/health')
    async def health():
        async with app.state.sessionmaker() as session:
            await session.execute(text('SELECT 1'))
        return {'ok': True}

    return app
