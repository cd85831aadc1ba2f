import base64
import dataclasses
import datetime
import hashlib
import hmac
import math
import mimetypes
import threading
from contextlib import contextmanager
from logging import Logger
from pathlib import Path
from typing import Iterator, Optional
from urllib import parse

from botocore.exceptions import ClientError
from dateutil import parser
from mypy_boto3_s3.client import S3Client
from mypy_boto3_s3.type_defs import HeadObjectOutputTypeDef
from pyvips import Image, Interesting  # type: ignore

from respimg.errors import DerivativeError, ImageStyleNotFound, InvalidConfig, OriginalNotFound
from respimg.files.index import Scheme, StoredFile
from respimg.storage import ConfigStore, DocumentCache, is_not_found_client_error, json_dump
from respimg.typing import (
    EffectDocument,
    FileUri,
    HttpPath,
    ImageStyleDocument,
    S3Key,
    StyleId,
    Url
)

TIMESTAMP_METADATA = 'original-timestamp'
STYLE_METADATA = 'style-fingerprint'
FINGERPRINT_LENGTH = 16
TOKEN_QUERY = 'itok'
TOKEN_LENGTH = 8
QUALITY = 80


def round_half_up(x: float) -> int:
  return int(math.floor(x + 0.5))


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(eq=True, frozen=True)
class ScaleEffect:
  width: Optional[int]
  height: Optional[int]
  upscale: bool = False

  def transform_dimensions(self, size: Size) -> Size:
    aspect = size.height / size.width
    width = self.width
    height = self.height

    # The missing target dimension is calculated from the other one. With both set, the one
    # that would not exceed its target is calculated.
    if width is not None and (height is None or aspect < height / width):
      height = round_half_up(width * aspect)
    elif height is not None:
      width = round_half_up(height / aspect)
    else:
      return size

    if not self.upscale and (width >= size.width or height >= size.height):
      return size

    return Size(width, height)

  def apply(self, image: Image) -> Image:
    original = Size.from_image(image)
    target = self.transform_dimensions(original)
    if target == original:
      return image
    return image.resize(target.width / original.width, vscale=target.height / original.height)


@dataclasses.dataclass(eq=True, frozen=True)
class ScaleAndCropEffect:
  width: int
  height: int

  def transform_dimensions(self, size: Size) -> Size:
    return Size(self.width, self.height)

  def apply(self, image: Image) -> Image:
    return image.thumbnail_image(
        self.width, height=self.height, crop=Interesting.CENTRE, size='both')


Effect = ScaleEffect | ScaleAndCropEffect


def positive_or_none(name: str, value: Optional[int]) -> Optional[int]:
  if value is not None and (type(value) is not int or value <= 0):
    raise ValueError(f'{name} must be a positive integer: {value!r}')
  return value


def effect_from_document(doc: EffectDocument) -> Effect:
  match doc['type']:
    case 'scale':
      width = positive_or_none('width', doc.get('width'))
      height = positive_or_none('height', doc.get('height'))
      if width is None and height is None:
        raise ValueError('scale needs width or height')
      return ScaleEffect(width, height, doc.get('upscale', False))
    case 'scale_and_crop':
      width = positive_or_none('width', doc.get('width'))
      height = positive_or_none('height', doc.get('height'))
      if width is None or height is None:
        raise ValueError('scale_and_crop needs width and height')
      return ScaleAndCropEffect(width, height)
    case unknown:
      raise ValueError(f'unknown effect: {unknown}')


def effect_to_document(effect: Effect) -> EffectDocument:
  match effect:
    case ScaleEffect(width=width, height=height, upscale=upscale):
      return {'type': 'scale', 'width': width, 'height': height, 'upscale': upscale}
    case ScaleAndCropEffect(width=width, height=height):
      return {'type': 'scale_and_crop', 'width': width, 'height': height}
    case _:
      raise Exception('system error')


def style_config_name(style_id: str) -> str:
  return f'image.style.{style_id}'


def style_cache_tag(style_id: str) -> str:
  return f'config:{style_config_name(style_id)}'


@dataclasses.dataclass(eq=True, frozen=True)
class ImageStyle:
  id: StyleId
  label: str
  effects: tuple[Effect, ...]

  @classmethod
  def from_document(cls, doc: ImageStyleDocument) -> 'ImageStyle':
    name = style_config_name(doc.get('id', '?'))
    try:
      return cls(
          id=StyleId(doc['id']),
          label=doc.get('label', doc['id']),
          effects=tuple(effect_from_document(ed) for ed in doc['effects']))
    except (KeyError, TypeError) as e:
      raise InvalidConfig(name, f'missing field {e}')
    except ValueError as e:
      raise InvalidConfig(name, str(e))

  def to_document(self) -> ImageStyleDocument:
    return {
        'id': self.id,
        'label': self.label,
        'effects': [effect_to_document(e) for e in self.effects],
    }

  @property
  def cache_tag(self) -> str:
    return style_cache_tag(self.id)

  @property
  def fingerprint(self) -> str:
    effects = json_dump([effect_to_document(e) for e in self.effects])
    return hashlib.sha256(effects.encode()).hexdigest()[:FINGERPRINT_LENGTH]

  def transform_dimensions(self, size: Optional[Size]) -> Optional[Size]:
    if size is None or size.width <= 0 or size.height <= 0:
      return None
    for effect in self.effects:
      size = effect.transform_dimensions(size)
    return size

  def apply(self, data: bytes, extension: str) -> bytes:
    image: Image = Image.new_from_buffer(data, '')
    for effect in self.effects:
      image = effect.apply(image)

    if extension in ['.jpg', '.jpeg', '.webp']:
      return image.write_to_buffer(extension, Q=QUALITY)
    return image.write_to_buffer(extension)


STOCK_STYLES: list[ImageStyleDocument] = [
    {
        'id': 'thumbnail',
        'label': 'Thumbnail (100×100)',
        'effects': [{'type': 'scale', 'width': 100, 'height': 100, 'upscale': False}],
    },
    {
        'id': 'medium',
        'label': 'Medium (220×220)',
        'effects': [{'type': 'scale', 'width': 220, 'height': 220, 'upscale': False}],
    },
    {
        'id': 'large',
        'label': 'Large (480×480)',
        'effects': [{'type': 'scale', 'width': 480, 'height': 480, 'upscale': False}],
    },
]


class ImageStyleRepository:

  def __init__(self, store: ConfigStore, cache: Optional[DocumentCache] = None):
    self.store = store
    self.styles = DocumentCache() if cache is None else cache

  def get(self, style_id: str) -> ImageStyle:
    style: Optional[ImageStyle] = self.styles.get(style_id)
    if style is None:
      doc = self.store.read(style_config_name(style_id))
      if doc is None:
        raise ImageStyleNotFound(style_id)
      style = ImageStyle.from_document(doc)
      self.styles.put(style_id, style)
    return style

  def maybe_get(self, style_id: str) -> Optional[ImageStyle]:
    try:
      return self.get(style_id)
    except ImageStyleNotFound:
      return None

  def save(self, style: ImageStyle) -> None:
    self.store.write(style_config_name(style.id), style.to_document())
    self.styles.pop(style.id)

  def install_stock_styles(self) -> None:
    for doc in STOCK_STYLES:
      if self.store.read(style_config_name(doc['id'])) is None:
        self.save(ImageStyle.from_document(doc))


def derivative_token(private_key: str, style_id: str, uri: FileUri) -> str:
  digest = hmac.new(private_key.encode(), f'{style_id}:{uri}'.encode(), hashlib.sha256).digest()
  return base64.urlsafe_b64encode(digest).decode()[:TOKEN_LENGTH]


def verify_token(private_key: str, style_id: str, uri: FileUri, token: Optional[str]) -> bool:
  if token is None:
    return False
  return hmac.compare_digest(derivative_token(private_key, style_id, uri).encode(), token.encode())


class DerivativeUrlService:

  def __init__(self, base_url: str, private_key: str):
    self.base_url = base_url.rstrip('/')
    self.private_key = private_key

  def original_path(self, uri: FileUri | str) -> HttpPath:
    f = StoredFile.from_uri(uri)
    return HttpPath(f'{f.scheme.route_prefix}{parse.quote(f.target)}')

  def derivative_path(self, uri: FileUri | str, style_id: str) -> HttpPath:
    f = StoredFile.from_uri(uri)
    return HttpPath(
        f'{f.scheme.route_prefix}styles/{style_id}/{f.scheme.value}/{parse.quote(f.target)}')

  def original_url(self, uri: FileUri | str) -> Url:
    return Url(f'{self.base_url}{self.original_path(uri)}')

  def derive_url(self, uri: FileUri | str, style_id: str) -> Url:
    f = StoredFile.from_uri(uri)
    token = derivative_token(self.private_key, style_id, f.uri)
    query = parse.urlencode({TOKEN_QUERY: token})
    return Url(f'{self.base_url}{self.derivative_path(uri, style_id)}?{query}')


def guess_content_type(target: str) -> str:
  mime = mimetypes.guess_type(target)[0]
  if mime is None:
    return 'application/octet-stream'
  return mime


def format_timestamp(ts: datetime.datetime) -> str:
  return ts.astimezone(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


class KeyLock:

  def __init__(self) -> None:
    self.lock = threading.Lock()
    self.holders = 0


@dataclasses.dataclass(frozen=True)
class Derivative:
  key: S3Key
  content_type: str
  body: Optional[bytes]
  generated: bool


class DerivativeStore:
  """Creates and keeps image style derivatives in the generated bucket.

  A derivative is fresh when its ``original-timestamp`` metadata equals the original's
  LastModified and its ``style-fingerprint`` metadata matches the style's current effects.
  Work on one derivative key is serialized within the process, and S3 replaces objects
  atomically, so readers never see partial output.
  """

  def __init__(
      self,
      log: Logger,
      s3: S3Client,
      buckets: dict[Scheme, str],
      generated_bucket: str,
      generated_key_prefix: str,
  ):
    self.log = log
    self.s3 = s3
    self.buckets = buckets
    self.generated_bucket = generated_bucket
    self.generated_key_prefix = generated_key_prefix
    self.locks: dict[S3Key, KeyLock] = {}
    self.locks_lock = threading.Lock()

  @contextmanager
  def locked(self, key: S3Key) -> Iterator[None]:
    with self.locks_lock:
      if key not in self.locks:
        self.locks[key] = KeyLock()
      key_lock = self.locks[key]
      key_lock.holders += 1

    try:
      with key_lock.lock:
        yield
    finally:
      # Nobody holds or waits for the key any more.
      with self.locks_lock:
        key_lock.holders -= 1
        if key_lock.holders == 0:
          del self.locks[key]

  def derivative_key(self, f: StoredFile, style_id: str) -> S3Key:
    return S3Key(f'{self.generated_key_prefix}styles/{style_id}/{f.scheme.value}/{f.target}')

  def head(self, bucket: str, key: str) -> Optional[HeadObjectOutputTypeDef]:
    try:
      return self.s3.head_object(Bucket=bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        return None
      raise e

  @staticmethod
  def is_fresh(
      original: HeadObjectOutputTypeDef,
      generated: Optional[HeadObjectOutputTypeDef],
      style: ImageStyle,
  ) -> bool:
    if generated is None:
      return False
    if generated['Metadata'].get(STYLE_METADATA) != style.fingerprint:
      return False
    ts = generated['Metadata'].get(TIMESTAMP_METADATA)
    if ts is None:
      return False
    return parser.parse(ts) == original['LastModified']

  def read_original(self, f: StoredFile) -> bytes:
    try:
      res = self.s3.get_object(Bucket=self.buckets[f.scheme], Key=f.target)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise OriginalNotFound(f.uri)
      raise e
    return res['Body'].read()

  def ensure(self, f: StoredFile, style: ImageStyle) -> Derivative:
    key = self.derivative_key(f, style.id)
    content_type = guess_content_type(f.target)

    with self.locked(key):
      original = self.head(self.buckets[f.scheme], f.target)
      if original is None:
        raise OriginalNotFound(f.uri)

      generated = self.head(self.generated_bucket, key)
      if self.is_fresh(original, generated, style):
        return Derivative(key=key, content_type=content_type, body=None, generated=False)

      data = self.read_original(f)
      extension = Path(f.target).suffix.lower()

      try:
        body = style.apply(data, extension)
      except Exception as e:
        raise DerivativeError(f'failed to apply "{style.id}" to {f.uri}: {e}')

      self.s3.put_object(
          Body=body,
          Bucket=self.generated_bucket,
          ContentType=content_type,
          Key=key,
          Metadata={
              TIMESTAMP_METADATA: format_timestamp(original['LastModified']),
              STYLE_METADATA: style.fingerprint,
          })

      self.log.debug({
          'message': 'derivative generated',
          'key': key,
          'style': style.id,
          'size': len(body),
      })

      return Derivative(key=key, content_type=content_type, body=body, generated=True)
