from typing import Optional

from respimg.jsonlog import init_logging
from respimg.typing import Request, Response

CACHE_TAGS_HEADER = 'x-cache-tags'
ERROR_CACHE_TAG = '4xx-response'

log = init_logging(__name__)


def get_header(req: Request, name: str, default: str) -> str:
  if name not in req['headers']:
    return default

  if req['headers'][name][0]['value'] == '':
    return default

  return req['headers'][name][0]['value']


def override_cache_control(req: Request, res: Response) -> bool:
  if 'cache-control' not in res['headers']:
    return False

  if 'x-res-cache-control-overridable' not in req['headers']:
    return False

  return req['headers']['x-res-cache-control-overridable'][0]['value'] == 'true'


def new_cache_control(req: Request, res: Response) -> str:
  if 400 <= int(res['status']) < 600:
    error_max_age = int(get_header(req, 'x-env-error-max-age', '0'))
    return f'public, max-age={error_max_age}'

  if override_cache_control(req, res):
    return res['headers']['cache-control'][0]['value']

  return get_header(req, 'x-res-cache-control', 'public, max-age=0')


def new_cache_tags(req: Request, res: Response) -> Optional[str]:
  status = int(res['status'])
  # Error responses depend on no style configuration.
  if 400 <= status < 500:
    return ERROR_CACHE_TAG
  if 500 <= status < 600:
    return None

  tags = get_header(req, 'x-res-cache-tags', '')
  return None if tags == '' else tags


def lambda_main(req: Request, res: Response) -> Response:
  cache_control = new_cache_control(req, res)
  cache_tags = new_cache_tags(req, res)
  path = req['uri'][1:]
  log.debug({
      'message': 'new cache-control',
      'cache-control': cache_control,
      'cache-tags': cache_tags,
      'path': path,
  })
  res['headers']['cache-control'] = [{'value': cache_control}]
  if cache_tags is None:
    res['headers'].pop(CACHE_TAGS_HEADER, None)
  else:
    res['headers'][CACHE_TAGS_HEADER] = [{'value': cache_tags}]
  return res
