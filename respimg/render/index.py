import dataclasses
import html
import os
from enum import Enum
from logging import Logger
from typing import Any, Optional

import boto3

from respimg.breakpoint.index import BreakpointCatalog
from respimg.errors import BreakpointGroupNotFound, InvalidConfig, NotFoundError
from respimg.jsonlog import init_logging
from respimg.mapping.index import (
    ImageStyleRef,
    MappingStorage,
    ResponsiveImageMapping,
    UseOriginal,
    mapping_cache_tag
)
from respimg.storage import S3ConfigStore
from respimg.style.index import DerivativeUrlService, ImageStyleRepository, Size, style_cache_tag
from respimg.typing import (
    FieldDisplaySettingsDocument,
    FileUri,
    RenderRequestPayload,
    RenderResponsePayload,
    SourceImageDocument,
    StyleId,
    Url
)

CACHE_TAGS_HEADER = 'x-cache-tags'

logger = init_logging(__name__)


class ImageLink(Enum):
  NONE = 'none'
  FILE = 'file'
  CONTENT = 'content'

  @classmethod
  def from_setting(cls, value: Optional[str]) -> 'ImageLink':
    if value is None or value == '':
      return cls.NONE
    try:
      return cls(value)
    except ValueError:
      raise InvalidConfig('field.display', f'unknown image_link {value!r}')


@dataclasses.dataclass(eq=True, frozen=True)
class FieldDisplaySettings:
  responsive_image_mapping: Optional[str] = None
  fallback_image_style: Optional[StyleId] = None
  image_link: ImageLink = ImageLink.NONE

  @classmethod
  def from_document(cls, doc: FieldDisplaySettingsDocument) -> 'FieldDisplaySettings':
    return cls(
        responsive_image_mapping=doc.get('responsive_image_mapping') or None,
        fallback_image_style=StyleId(doc['fallback_image_style'])
        if doc.get('fallback_image_style') else None,
        image_link=ImageLink.from_setting(doc.get('image_link')))


@dataclasses.dataclass(eq=True, frozen=True)
class SourceImage:
  uri: FileUri
  width: Optional[int] = None
  height: Optional[int] = None
  alt: str = ''

  @classmethod
  def from_document(cls, doc: SourceImageDocument) -> 'SourceImage':
    return cls(
        uri=FileUri(doc['uri']),
        width=doc.get('width'),
        height=doc.get('height'),
        alt=doc.get('alt', ''))

  @property
  def size(self) -> Optional[Size]:
    if self.width is None or self.height is None:
      return None
    return Size(self.width, self.height)


@dataclasses.dataclass(eq=True, frozen=True)
class Candidate:
  multiplier: str
  url: Url


@dataclasses.dataclass(eq=True, frozen=True)
class Source:
  media_query: str
  candidates: tuple[Candidate, ...]

  @property
  def srcset(self) -> str:
    return ', '.join(f'{c.url} {c.multiplier}' for c in self.candidates)

  def candidates_by_resolution(self) -> dict[str, Url]:
    return {c.multiplier: c.url for c in self.candidates}


@dataclasses.dataclass(eq=True, frozen=True)
class Fallback:
  src: Url
  style: Optional[StyleId]
  width: Optional[int]
  height: Optional[int]


@dataclasses.dataclass(frozen=True)
class RenderResult:
  sources: tuple[Source, ...]
  fallback: Fallback
  cache_tags: frozenset[str]
  markup: str

  @property
  def fallback_src(self) -> Url:
    return self.fallback.src


class MappingResolver:

  def __init__(self, log: Logger, catalog: BreakpointCatalog, urls: DerivativeUrlService):
    self.log = log
    self.catalog = catalog
    self.urls = urls

  def resolve(
      self,
      mapping: ResponsiveImageMapping,
      image: SourceImage,
  ) -> tuple[list[Source], set[StyleId]]:
    try:
      breakpoints = self.catalog.get_breakpoints(mapping.breakpoint_group)
    except BreakpointGroupNotFound:
      # Rendered fallback-only. Kept tolerant, but visible in the logs.
      self.log.warning({
          'message': 'breakpoint group not found',
          'mapping': mapping.id,
          'breakpoint_group': mapping.breakpoint_group,
      })
      return [], set()

    known = {bp.id for bp in breakpoints}
    for entry in mapping.entries:
      if entry.key.breakpoint_id not in known:
        self.log.debug({
            'message': 'mapping entry skipped',
            'mapping': mapping.id,
            'breakpoint': entry.key.breakpoint_id,
            'multiplier': entry.key.multiplier,
        })

    sources: list[Source] = []
    used: set[StyleId] = set()
    for bp in breakpoints:
      candidates: list[Candidate] = []
      for entry in mapping.entries_for(bp.id):
        match entry.style:
          case ImageStyleRef(id=style_id):
            url = self.urls.derive_url(image.uri, style_id)
            used.add(style_id)
          case UseOriginal():
            url = self.urls.original_url(image.uri)
          case _:
            raise Exception('system error')
        candidates.append(Candidate(entry.key.multiplier, url))

      if len(candidates) != 0:
        sources.append(Source(bp.media_query, tuple(candidates)))

    return sources, used


class FallbackSelector:

  def __init__(self, urls: DerivativeUrlService, styles: ImageStyleRepository):
    self.urls = urls
    self.styles = styles

  def select_fallback(self, settings: FieldDisplaySettings, image: SourceImage) -> Fallback:
    style_id = settings.fallback_image_style
    if style_id is None:
      return Fallback(
          src=self.urls.original_url(image.uri),
          style=None,
          width=image.width,
          height=image.height)

    style = self.styles.maybe_get(style_id)
    size = None if style is None else style.transform_dimensions(image.size)
    return Fallback(
        src=self.urls.derive_url(image.uri, style_id),
        style=style_id,
        width=None if size is None else size.width,
        height=None if size is None else size.height)


def attributes(attrs: list[tuple[str, Optional[Any]]]) -> str:
  return ''.join(f' {k}="{html.escape(str(v))}"' for k, v in attrs if v is not None)


def img_markup(fallback: Fallback, alt: str) -> str:
  attrs = attributes([
      ('src', fallback.src),
      ('width', fallback.width),
      ('height', fallback.height),
      ('alt', alt),
  ])
  return f'<img{attrs} />'


def picture_markup(sources: list[Source], fallback: Fallback, alt: str) -> str:
  img = img_markup(fallback, alt)
  if len(sources) == 0:
    return img

  lines = ['<picture>']
  for source in sources:
    attrs = attributes([('srcset', source.srcset), ('media', source.media_query)])
    lines.append(f'<source{attrs} />')
  lines.append(img)
  lines.append('</picture>')
  return ''.join(lines)


def link_markup(href: str, inner: str) -> str:
  return f'<a href="{html.escape(href)}">{inner}</a>'


class ResponsiveImageRenderer:

  def __init__(
      self,
      log: Logger,
      mappings: MappingStorage,
      resolver: MappingResolver,
      fallback_selector: FallbackSelector,
      urls: DerivativeUrlService,
  ):
    self.log = log
    self.mappings = mappings
    self.resolver = resolver
    self.fallback_selector = fallback_selector
    self.urls = urls

  def render(
      self,
      settings: FieldDisplaySettings,
      image: SourceImage,
      host_url: Optional[str] = None,
  ) -> RenderResult:
    cache_tags: set[str] = set()
    sources: list[Source] = []

    if settings.responsive_image_mapping is not None:
      mapping = self.mappings.load(settings.responsive_image_mapping)
      cache_tags.add(mapping_cache_tag(mapping.id))
      sources, used = self.resolver.resolve(mapping, image)
      cache_tags.update(style_cache_tag(s) for s in used)

    fallback = self.fallback_selector.select_fallback(settings, image)
    if fallback.style is not None:
      cache_tags.add(style_cache_tag(fallback.style))

    markup = picture_markup(sources, fallback, image.alt)

    match settings.image_link:
      case ImageLink.FILE:
        markup = link_markup(self.urls.original_url(image.uri), markup)
      case ImageLink.CONTENT:
        if host_url is None:
          self.log.debug({'message': 'no host url to link to', 'uri': image.uri})
        else:
          markup = link_markup(host_url, markup)
      case ImageLink.NONE:
        pass

    return RenderResult(
        sources=tuple(sources),
        fallback=fallback,
        cache_tags=frozenset(cache_tags),
        markup=markup)

  def render_field(
      self,
      settings: FieldDisplaySettings,
      image: SourceImage,
      host_url: Optional[str] = None,
  ) -> Optional[RenderResult]:
    try:
      return self.render(settings, image, host_url)
    except (NotFoundError, InvalidConfig) as e:
      self.log.warning({
          'message': 'responsive image not rendered',
          'reason': f'{type(e).__name__}: {e}',
          'uri': image.uri,
      })
      return None


def cache_tags_header(tags: frozenset[str] | set[str]) -> str:
  return ' '.join(sorted(tags))


def response_headers(results: list[Optional[RenderResult]]) -> dict[str, str]:
  tags: set[str] = set()
  for result in results:
    if result is not None:
      tags.update(result.cache_tags)
  return {CACHE_TAGS_HEADER: cache_tags_header(tags)}


@dataclasses.dataclass(eq=True, frozen=True)
class RenderParams:
  region: str
  config_bucket: str
  config_key_prefix: str
  base_url: str
  private_key: str


class RenderService:
  instances: dict[RenderParams, 'RenderService'] = {}

  def __init__(self, log: Logger, renderer: ResponsiveImageRenderer):
    self.log = log
    self.renderer = renderer

  @classmethod
  def create(
      cls,
      log: Logger,
      mappings: MappingStorage,
      catalog: BreakpointCatalog,
      styles: ImageStyleRepository,
      urls: DerivativeUrlService,
  ) -> 'RenderService':
    resolver = MappingResolver(log, catalog, urls)
    fallback_selector = FallbackSelector(urls, styles)
    return cls(log, ResponsiveImageRenderer(log, mappings, resolver, fallback_selector, urls))

  @classmethod
  def from_env(cls, log: Logger) -> Optional['RenderService']:
    try:
      params = RenderParams(
          region=os.environ['RESPIMG_REGION'],
          config_bucket=os.environ['RESPIMG_CONFIG_BUCKET'],
          config_key_prefix=os.environ.get('RESPIMG_CONFIG_KEY_PREFIX', ''),
          base_url=os.environ['RESPIMG_BASE_URL'],
          private_key=os.environ['RESPIMG_PRIVATE_KEY'])
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None

    if params not in cls.instances:
      s3 = boto3.client('s3', region_name=params.region)
      store = S3ConfigStore(s3, params.config_bucket, params.config_key_prefix)
      cls.instances[params] = cls.create(
          log=log,
          mappings=MappingStorage(store),
          catalog=BreakpointCatalog(store),
          styles=ImageStyleRepository(store),
          urls=DerivativeUrlService(params.base_url, params.private_key))

    return cls.instances[params]

  def process(self, payload: RenderRequestPayload) -> RenderResponsePayload:
    image = SourceImage.from_document(payload['image'])
    try:
      settings = FieldDisplaySettings.from_document(payload['settings'])
    except InvalidConfig as e:
      self.log.warning({
          'message': 'responsive image not rendered',
          'reason': f'{type(e).__name__}: {e}',
          'uri': image.uri,
      })
      return {'markup': '', 'headers': response_headers([])}

    result = self.renderer.render_field(settings, image, payload.get('hostUrl'))

    self.log.debug({
        'message': 'rendered',
        'uri': image.uri,
        'mapping': settings.responsive_image_mapping,
        'sources': 0 if result is None else len(result.sources),
    })

    return {
        'markup': '' if result is None else result.markup,
        'headers': response_headers([result]),
    }


def lambda_render(payload: RenderRequestPayload) -> RenderResponsePayload:
  service = RenderService.from_env(logger)
  if service is None:
    raise Exception('render service is not configured')
  return service.process(payload)
