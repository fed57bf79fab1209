from __future__ import annotations

import pytest


def test_result_hosts_exclude_foreign_buckets(settings, monkeypatch):
    monkeypatch.setattr(settings, 'storage_bucket', 'typus-prod')
    monkeypatch.setattr(settings, 'storage_endpoint_url', '')
    monkeypatch.setattr(settings, 'storage_public_base_url', '')

    assert 'typus-prod.s3.amazonaws.com' in settings.allowed_result_hosts()
    assert settings.is_allowed_result_url('https://typus-prod.s3.amazonaws.com/generated/a.png')
    assert not settings.is_allowed_result_url('https://attacker-bucket.s3.amazonaws.com/a.png')
    assert not settings.is_allowed_result_url('https://amazonaws.com/a.png')


def test_result_hosts_follow_configured_storage(settings, monkeypatch):
    monkeypatch.setattr(settings, 'storage_bucket', 'typus-prod')
    monkeypatch.setattr(settings, 'storage_endpoint_url', 'https://minio.internal:9000')
    monkeypatch.setattr(settings, 'storage_public_base_url', 'https://cdn.typus.app')

    hosts = settings.allowed_result_hosts()

    assert 'minio.internal' in hosts
    assert 'cdn.typus.app' in hosts
    assert not any(host.endswith('amazonaws.com') for host in hosts)


@pytest.mark.parametrize(
    'url, allowed',
    [
        ('https://replicate.delivery/pbxt/out.png', True),
        ('https://pbxt.replicate.delivery/out.png', True),
        ('https://storage.googleapis.com/runpod-out/result.png', True),
        ('https://replicate.delivery.evil.com/out.png', False),
        ('ftp://replicate.delivery/out.png', False),
    ],
)
def test_is_allowed_result_url(settings, url, allowed):
    assert settings.is_allowed_result_url(url) is allowed
