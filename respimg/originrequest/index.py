import base64
import dataclasses
import re
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional
from urllib import parse

import boto3
from botocore.exceptions import ClientError
from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from respimg.errors import AuthorizationError, DerivativeError, OriginalNotFound
from respimg.files.index import Account, Scheme, StoredFile, check_access
from respimg.jsonlog import init_logging
from respimg.storage import S3ConfigStore
from respimg.style.index import (
    TOKEN_QUERY,
    DerivativeStore,
    ImageStyle,
    ImageStyleRepository,
    verify_token
)
from respimg.typing import HttpPath, OriginRequestEvent, Request, ResponseResult

OVERRIDABLE = 'x-res-cache-control-overridable'
CACHE_CONTROL = 'x-res-cache-control'
CACHE_TAGS = 'x-res-cache-tags'
ACCOUNT_PERMISSIONS = 'x-account-permissions'
CACHE_TAGS_HEADER = 'x-cache-tags'

ERROR_CACHE_TAG = '4xx-response'
CACHE_CONTROL_DENIED = 'must-revalidate, no-cache, private'

derivative_path_re = re.compile(r'^styles/([A-Za-z0-9_-]+)/([a-z]+)/(.+)$')

logger = init_logging(__name__)


def get_header(req: Request, name: str) -> str:
  return req['origin']['s3']['customHeaders'][name][0]['value']


def get_header_or(req: Request, name: str, default: str = '') -> str:
  return (get_header(req, name) if name in req['origin']['s3']['customHeaders'] else default)


def get_viewer_header(req: Request, name: str) -> Optional[str]:
  if name not in req['headers']:
    return None
  return req['headers'][name][0]['value']


@dataclasses.dataclass(eq=True, frozen=True)
class FieldUpdate:
  reason: str
  res_cache_control: Optional[str] = None
  res_cache_control_overridable: Optional[str] = None
  res_cache_tags: Optional[str] = None
  origin_domain: Optional[str] = None
  uri: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  b64_body: Optional[str]
  cache_control: str
  content_type: Optional[str]
  cache_tags: tuple[str, ...]
  img_size: Optional[int]


class MalformedPath(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class FileRequest:
  file: StoredFile
  style_id: Optional[str]

  @classmethod
  def maybe_from_path(cls, path: HttpPath) -> Optional['FileRequest']:
    for scheme in Scheme:
      prefix = scheme.route_prefix
      if not path.startswith(prefix):
        continue

      rest = parse.unquote(path[len(prefix):])
      m = derivative_path_re.match(rest)
      if m is None:
        return cls(cls.stored_file(scheme, rest), None)

      # The scheme segment has to agree with the route so that derivatives of private
      # files cannot be fetched through the public route.
      if m[2] != scheme.value:
        raise MalformedPath(f'scheme "{m[2]}" under {prefix}')

      return cls(cls.stored_file(scheme, m[3]), m[1])

    return None

  @staticmethod
  def stored_file(scheme: Scheme, target: str) -> StoredFile:
    if target == '' or '..' in target.split('/'):
      raise MalformedPath(f'invalid target: {target!r}')
    return StoredFile(scheme, target)


@dataclasses.dataclass(eq=True, frozen=True)
class XParams:
  region: str
  generated_domain: str
  generated_key_prefix: str
  public_bucket: str
  private_bucket: str
  private_domain: str
  config_bucket: str
  config_key_prefix: str
  private_key: str
  perm_resp_max_age: int
  temp_resp_max_age: int
  itok_exempt_patterns: str
  basedir: str


class FileServer:
  instances: dict[XParams, 'FileServer'] = {}

  def __init__(
      self,
      log: Logger,
      styles: ImageStyleRepository,
      derivatives: DerivativeStore,
      generated_domain: str,
      private_domain: str,
      private_key: str,
      perm_resp_max_age: int,
      temp_resp_max_age: int,
      itok_exempt_path_spec: Optional[PathSpec],
      basedir: str,
  ):
    self.log = log
    self.styles = styles
    self.derivatives = derivatives
    self.generated_domain = generated_domain
    self.private_domain = private_domain
    self.private_key = private_key
    self.perm_resp_max_age = perm_resp_max_age
    self.temp_resp_max_age = temp_resp_max_age
    self.itok_exempt_path_spec = itok_exempt_path_spec
    self.basedir = basedir
    self.log_context = {'path': '', 'qstr': ''}
    self.cache_control_perm = f'public, max-age={self.perm_resp_max_age}'
    self.cache_control_temp = f'public, max-age={self.temp_resp_max_age}'
    self.cache_control_private = f'private, max-age={self.perm_resp_max_age}'

  @classmethod
  def from_lambda(
      cls,
      log: Logger,
      req: Request,
  ) -> Optional['FileServer']:
    try:
      region = get_header(req, 'x-env-region')
      generated_domain = get_header(req, 'x-env-generated-domain')
      generated_key_prefix = get_header(req, 'x-env-generated-key-prefix')
      public_bucket = req['origin']['s3']['domainName'].split('.', 1)[0]
      private_domain = get_header(req, 'x-env-private-domain')
      config_bucket = get_header(req, 'x-env-config-bucket')
      config_key_prefix = get_header_or(req, 'x-env-config-key-prefix')
      private_key = get_header(req, 'x-env-private-key')
      perm_resp_max_age = int(get_header(req, 'x-env-perm-resp-max-age'))
      temp_resp_max_age = int(get_header(req, 'x-env-temp-resp-max-age'))
      itok_exempt_patterns = get_header_or(req, 'x-env-itok-exempt-patterns')
      basedir = get_header_or(req, 'x-env-basedir')
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None

    server_key = XParams(
        region=region,
        generated_domain=generated_domain,
        generated_key_prefix=generated_key_prefix,
        public_bucket=public_bucket,
        private_bucket=private_domain.split('.', 1)[0],
        private_domain=private_domain,
        config_bucket=config_bucket,
        config_key_prefix=config_key_prefix,
        private_key=private_key,
        perm_resp_max_age=perm_resp_max_age,
        temp_resp_max_age=temp_resp_max_age,
        itok_exempt_patterns=itok_exempt_patterns,
        basedir=basedir)

    if server_key not in cls.instances:
      s3 = boto3.client('s3', region_name=region)
      path_spec = (
          None if itok_exempt_patterns == '' else PathSpec.from_lines(
              GitWildMatchPattern, itok_exempt_patterns.split(',')))
      cls.instances[server_key] = cls(
          log=log,
          styles=ImageStyleRepository(S3ConfigStore(s3, config_bucket, config_key_prefix)),
          derivatives=DerivativeStore(
              log=log,
              s3=s3,
              buckets={
                  Scheme.PUBLIC: server_key.public_bucket,
                  Scheme.PRIVATE: server_key.private_bucket,
              },
              generated_bucket=generated_domain.split('.', 1)[0],
              generated_key_prefix=generated_key_prefix),
          generated_domain=generated_domain,
          private_domain=private_domain,
          private_key=private_key,
          perm_resp_max_age=perm_resp_max_age,
          temp_resp_max_age=temp_resp_max_age,
          itok_exempt_path_spec=path_spec,
          basedir=basedir)

    return cls.instances[server_key]

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def cache_control_for(self, scheme: Scheme) -> str:
    if scheme.protected:
      return self.cache_control_private
    return self.cache_control_perm

  def error_response(self, status: int, cache_control: Optional[str] = None) -> InstantResponse:
    return InstantResponse(
        status=status,
        b64_body=None,
        cache_control=self.cache_control_temp if cache_control is None else cache_control,
        content_type=None,
        cache_tags=(ERROR_CACHE_TAG,) if 400 <= status < 500 else (),
        img_size=None)

  def denied_response(self) -> InstantResponse:
    # No style cache tag: nothing was generated for this requester.
    return self.error_response(HTTPStatus.FORBIDDEN, CACHE_CONTROL_DENIED)

  def token_exempt(self, path: HttpPath) -> bool:
    return self.itok_exempt_path_spec is not None and self.itok_exempt_path_spec.match_file(path)

  def process_original(self, req: FileRequest) -> FieldUpdate:
    uri = HttpPath(f'/{parse.quote(req.file.target)}')
    if req.file.scheme.protected:
      return FieldUpdate(
          reason='private orig',
          res_cache_control=self.cache_control_private,
          origin_domain=self.private_domain,
          uri=uri)

    return FieldUpdate(reason='public orig', res_cache_control=self.cache_control_perm, uri=uri)

  def process_derivative(
      self,
      path: HttpPath,
      req: FileRequest,
      qs: dict[str, list[str]],
  ) -> FieldUpdate | InstantResponse:
    assert req.style_id is not None

    style: Optional[ImageStyle] = self.styles.maybe_get(req.style_id)
    if style is None:
      self.log_debug('unknown style', {'style': req.style_id})
      return self.error_response(HTTPStatus.NOT_FOUND)

    token = qs[TOKEN_QUERY][0] if TOKEN_QUERY in qs else None
    if not self.token_exempt(path) and not verify_token(
        self.private_key, style.id, req.file.uri, token):
      self.log_debug('invalid token', {'style': style.id, 'uri': req.file.uri})
      return self.denied_response()

    try:
      derivative = self.derivatives.ensure(req.file, style)
    except OriginalNotFound:
      return self.error_response(HTTPStatus.NOT_FOUND)
    except (DerivativeError, ClientError) as e:
      self.log_error('failed to ensure derivative', {'reason': str(e), 'style': style.id})
      return self.error_response(HTTPStatus.INTERNAL_SERVER_ERROR)

    cache_control = self.cache_control_for(req.file.scheme)

    if derivative.body is not None:
      return InstantResponse(
          status=HTTPStatus.OK,
          b64_body=base64.b64encode(derivative.body).decode(),
          cache_control=cache_control,
          content_type=derivative.content_type,
          cache_tags=(style.cache_tag,),
          img_size=len(derivative.body))

    return FieldUpdate(
        reason='gen found',
        res_cache_control=cache_control,
        res_cache_tags=style.cache_tag,
        origin_domain=self.generated_domain,
        uri=HttpPath(f'/{parse.quote(derivative.key)}'))

  def process(
      self,
      path: HttpPath,
      qs: dict[str, list[str]],
      account: Account,
  ) -> FieldUpdate | InstantResponse:

    def run(path: HttpPath) -> FieldUpdate | InstantResponse:
      try:
        req = FileRequest.maybe_from_path(path)
      except MalformedPath as e:
        self.log_debug('malformed path', {'reason': str(e)})
        return self.error_response(HTTPStatus.NOT_FOUND)

      if req is None:
        return FieldUpdate(
            reason='noprocess',
            res_cache_control=self.cache_control_perm,
            res_cache_control_overridable='true')

      try:
        check_access(req.file.scheme, account)
      except AuthorizationError as e:
        self.log_debug('access denied', {'reason': str(e)})
        return self.denied_response()

      if req.style_id is None:
        return self.process_original(req)

      return self.process_derivative(path, req, qs)

    if self.basedir != '':
      if not path.startswith(self.basedir):
        self.log_error('path without basedir passed', {'basedir': self.basedir})
      else:
        path = HttpPath(path[len(self.basedir):])

    return run(path)

  def set_log_context(self, path: HttpPath, qstr: str) -> None:
    self.log_context = {'path': str(path), 'qstr': qstr}


def to_response_result(result: InstantResponse) -> ResponseResult:
  response_result: ResponseResult = {
      'status': str(result.status),
      'headers': {
          'cache-control': [{
              'value': result.cache_control,
          }],
      },
  }

  if len(result.cache_tags) != 0:
    response_result['headers'][CACHE_TAGS_HEADER] = [{'value': ' '.join(result.cache_tags)}]

  if result.content_type is not None:
    response_result['headers']['content-type'] = [{'value': result.content_type}]

  if result.b64_body is not None:
    response_result['body'] = result.b64_body
    response_result['bodyEncoding'] = 'base64'

  return response_result


def lambda_main(event: OriginRequestEvent) -> Request | ResponseResult:
  req = event['Records'][0]['cf']['request']

  # Set default value
  req['headers'][CACHE_CONTROL] = [{'value': ''}]
  req['headers'][OVERRIDABLE] = [{'value': ''}]
  req['headers'][CACHE_TAGS] = [{'value': ''}]

  server = FileServer.from_lambda(logger, req)
  if server is None:
    return req

  path = req['uri']
  qstr = req['querystring']
  account = Account.from_header(get_viewer_header(req, ACCOUNT_PERMISSIONS))

  server.set_log_context(path, qstr)
  result = server.process(path, parse.parse_qs(qstr), account)

  if isinstance(result, FieldUpdate):
    if result.origin_domain is not None:
      req['origin']['s3']['domainName'] = result.origin_domain
      req['headers']['host'][0]['value'] = result.origin_domain

    if result.uri is not None:
      req['uri'] = HttpPath(result.uri)

    if result.res_cache_control is not None:
      req['headers'][CACHE_CONTROL] = [{'value': result.res_cache_control}]

    if result.res_cache_control_overridable is not None:
      req['headers'][OVERRIDABLE] = [{'value': result.res_cache_control_overridable}]

    if result.res_cache_tags is not None:
      req['headers'][CACHE_TAGS] = [{'value': result.res_cache_tags}]

    server.log_debug(
        'done', {
            'uri': req['uri'],
            'origin_domain': req['origin']['s3']['domainName'],
            'res_cache_control': req['headers'][CACHE_CONTROL][0]['value'],
            'res_cache_tags': req['headers'][CACHE_TAGS][0]['value'],
            'reason': result.reason,
        })

    return req
  elif isinstance(result, InstantResponse):
    response_result = to_response_result(result)

    server.log_debug(
        'responded', {
            'uri': req['uri'],
            'status': result.status,
            'cache_control': result.cache_control,
            'cache_tags': result.cache_tags,
            'content_type': result.content_type,
            'img_size': result.img_size,
        })

    return response_result
  else:
    raise Exception('system error')
