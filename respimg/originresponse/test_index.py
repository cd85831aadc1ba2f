from typing import Any, Optional

import pytest

from .index import CACHE_TAGS_HEADER, lambda_main, new_cache_control, new_cache_tags

CACHE_CONTROL_PERM = 'public, max-age=31536000'
CACHE_CONTROL_PRIVATE = 'private, max-age=31536000'


def request(headers: dict[str, str]) -> Any:
  return {
      'uri': '/files/styles/large/public/image-test.png',
      'headers': {k: [{'value': v}] for k, v in headers.items()},
  }


def response(status: str, headers: dict[str, str]) -> Any:
  return {
      'status': status,
      'headers': {k: [{'value': v}] for k, v in headers.items()},
  }


@pytest.mark.parametrize(
    'req_headers,status,res_headers,expected', [
        ({'x-res-cache-control': CACHE_CONTROL_PERM}, '200', {}, CACHE_CONTROL_PERM),
        ({'x-res-cache-control': CACHE_CONTROL_PRIVATE}, '200', {}, CACHE_CONTROL_PRIVATE),
        ({}, '200', {}, 'public, max-age=0'),
        ({'x-res-cache-control': ''}, '200', {}, 'public, max-age=0'),
        (
            {
                'x-res-cache-control': CACHE_CONTROL_PERM,
                'x-res-cache-control-overridable': 'true',
            },
            '200',
            {'cache-control': 'no-cache'},
            'no-cache',
        ),
        (
            {
                'x-res-cache-control': CACHE_CONTROL_PERM,
                'x-res-cache-control-overridable': '',
            },
            '200',
            {'cache-control': 'no-cache'},
            CACHE_CONTROL_PERM,
        ),
        ({'x-res-cache-control': CACHE_CONTROL_PERM}, '404', {}, 'public, max-age=0'),
        (
            {
                'x-res-cache-control': CACHE_CONTROL_PERM,
                'x-env-error-max-age': '60',
            },
            '503',
            {},
            'public, max-age=60',
        ),
    ])
def test_new_cache_control(
    req_headers: dict[str, str],
    status: str,
    res_headers: dict[str, str],
    expected: str,
) -> None:
  assert new_cache_control(request(req_headers), response(status, res_headers)) == expected


@pytest.mark.parametrize(
    'req_headers,status,expected', [
        ({'x-res-cache-tags': 'config:image.style.large'}, '200', 'config:image.style.large'),
        ({'x-res-cache-tags': ''}, '200', None),
        ({}, '304', None),
        ({'x-res-cache-tags': 'config:image.style.large'}, '403', '4xx-response'),
        ({'x-res-cache-tags': 'config:image.style.large'}, '404', '4xx-response'),
        ({'x-res-cache-tags': 'config:image.style.large'}, '500', None),
    ])
def test_new_cache_tags(
    req_headers: dict[str, str],
    status: str,
    expected: Optional[str],
) -> None:
  assert new_cache_tags(request(req_headers), response(status, {})) == expected


def test_lambda_main() -> None:
  res = lambda_main(
      request({
          'x-res-cache-control': CACHE_CONTROL_PERM,
          'x-res-cache-tags': 'config:image.style.large',
      }),
      response('200', {'cache-control': 'no-cache'}))

  assert res['headers']['cache-control'] == [{'value': CACHE_CONTROL_PERM}]
  assert res['headers'][CACHE_TAGS_HEADER] == [{'value': 'config:image.style.large'}]


def test_lambda_main_drops_stale_cache_tags() -> None:
  res = lambda_main(
      request({'x-res-cache-control': CACHE_CONTROL_PERM}),
      response('502', {CACHE_TAGS_HEADER: 'config:image.style.large'}))

  assert res['headers']['cache-control'] == [{'value': 'public, max-age=0'}]
  assert CACHE_TAGS_HEADER not in res['headers']
