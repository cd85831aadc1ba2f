import dataclasses
import re
from decimal import Decimal
from typing import Any, Optional, Self

from respimg.errors import InvalidConfig, MappingNotFound
from respimg.storage import ConfigStore
from respimg.typing import BreakpointId, MappingDocument, MappingEntryDocument, StyleId

multiplier_re = re.compile(r'^(\d+(?:\.\d+)?)x$')


def parse_multiplier(multiplier: str) -> Decimal:
  m = multiplier_re.match(multiplier)
  if m is None:
    raise ValueError(f'invalid multiplier: {multiplier!r}')
  value = Decimal(m[1])
  if value <= 0:
    raise ValueError(f'invalid multiplier: {multiplier!r}')
  return value


@dataclasses.dataclass(eq=True, frozen=True)
class MappingKey:
  breakpoint_id: BreakpointId
  multiplier: str

  @classmethod
  def create(cls, breakpoint_id: str, multiplier: str) -> 'MappingKey':
    if breakpoint_id == '':
      raise ValueError('empty breakpoint id')
    parse_multiplier(multiplier)
    return cls(BreakpointId(breakpoint_id), multiplier)

  @property
  def density(self) -> Decimal:
    return parse_multiplier(self.multiplier)


@dataclasses.dataclass(eq=True, frozen=True)
class ImageStyleRef:
  id: StyleId


class UseOriginal:
  """Serve the original file instead of a derivative."""

  def __repr__(self) -> str:
    return 'USE_ORIGINAL'


USE_ORIGINAL = UseOriginal()

Style = ImageStyleRef | UseOriginal


def style_from_str(s: Optional[str]) -> Style:
  if s is None or s == '':
    return USE_ORIGINAL
  return ImageStyleRef(StyleId(s))


def style_to_str(style: Style) -> str:
  match style:
    case ImageStyleRef(id=style_id):
      return style_id
    case UseOriginal():
      return ''
    case _:
      raise Exception('system error')


@dataclasses.dataclass(eq=True, frozen=True)
class MappingEntry:
  key: MappingKey
  style: Style


@dataclasses.dataclass(eq=True, frozen=True)
class ResponsiveImageMapping:
  id: str
  label: str
  breakpoint_group: str
  entries: tuple[MappingEntry, ...]

  def entries_for(self, breakpoint_id: BreakpointId) -> list[MappingEntry]:
    entries = [e for e in self.entries if e.key.breakpoint_id == breakpoint_id]
    return sorted(entries, key=lambda e: e.key.density)

  def get(self, key: MappingKey) -> Optional[Style]:
    for e in self.entries:
      if e.key == key:
        return e.style
    return None

  def to_document(self) -> MappingDocument:
    return {
        'id': self.id,
        'label': self.label,
        'breakpointGroup': self.breakpoint_group,
        'mappings': [
            {
                'breakpointId': e.key.breakpoint_id,
                'multiplier': e.key.multiplier,
                'imageStyle': style_to_str(e.style),
            } for e in self.entries
        ],
    }

  @classmethod
  def from_document(cls, doc: Any) -> 'ResponsiveImageMapping':
    if not isinstance(doc, dict):
      raise InvalidConfig(mapping_config_name('?'), 'not an object')

    name = mapping_config_name(str(doc.get('id', '')))
    try:
      builder = MappingBuilder(doc['id'], doc['label'], doc['breakpointGroup'])
      entry_docs: list[MappingEntryDocument] = doc.get('mappings', [])
      for ed in entry_docs:
        builder.add_mapping(ed['breakpointId'], ed['multiplier'], ed.get('imageStyle', ''))
    except (KeyError, TypeError) as e:
      raise InvalidConfig(name, f'missing field {e}')
    except ValueError as e:
      raise InvalidConfig(name, str(e))
    return builder.build()


class MappingBuilder:

  def __init__(self, id: str, label: str, breakpoint_group: str):
    if id == '':
      raise ValueError('empty mapping id')
    self.id = id
    self.label = label
    self.breakpoint_group = breakpoint_group
    self.entries: dict[MappingKey, Style] = {}

  def add_mapping(
      self,
      breakpoint_id: str,
      multiplier: str,
      image_style: Optional[str] | Style,
  ) -> Self:
    key = MappingKey.create(breakpoint_id, multiplier)
    if key in self.entries:
      raise ValueError(f'duplicate mapping: {breakpoint_id} {multiplier}')

    if isinstance(image_style, (ImageStyleRef, UseOriginal)):
      self.entries[key] = image_style
    else:
      self.entries[key] = style_from_str(image_style)
    return self

  def build(self) -> ResponsiveImageMapping:
    return ResponsiveImageMapping(
        id=self.id,
        label=self.label,
        breakpoint_group=self.breakpoint_group,
        entries=tuple(MappingEntry(key, style) for key, style in self.entries.items()))


def mapping_config_name(mapping_id: str) -> str:
  return f'responsive_image.mappings.{mapping_id}'


def mapping_cache_tag(mapping_id: str) -> str:
  return f'config:{mapping_config_name(mapping_id)}'


class MappingStorage:

  def __init__(self, store: ConfigStore):
    self.store = store

  def load(self, mapping_id: str) -> ResponsiveImageMapping:
    doc = self.store.read(mapping_config_name(mapping_id))
    if doc is None:
      raise MappingNotFound(mapping_id)
    return ResponsiveImageMapping.from_document(doc)

  def save(self, mapping: ResponsiveImageMapping) -> None:
    self.store.write(mapping_config_name(mapping.id), mapping.to_document())
