import dataclasses
import re
from typing import Any, Optional

from respimg.errors import BreakpointGroupNotFound, InvalidConfig
from respimg.storage import ConfigStore, DocumentCache
from respimg.typing import BreakpointDocument, BreakpointGroupDocument, BreakpointId

min_width_re = re.compile(r'min-width:\s*(\d+(?:\.\d+)?)px')


def parse_min_width(media_query: str) -> float:
  m = min_width_re.search(media_query)
  if m is None:
    return 0.0
  return float(m[1])


@dataclasses.dataclass(eq=True, frozen=True)
class Breakpoint:
  id: BreakpointId
  label: str
  media_query: str
  min_width: float
  weight: int
  multipliers: tuple[str, ...]

  @classmethod
  def from_document(cls, doc: BreakpointDocument) -> 'Breakpoint':
    return cls(
        id=BreakpointId(doc['id']),
        label=doc.get('label', doc['id']),
        media_query=doc['mediaQuery'],
        min_width=parse_min_width(doc['mediaQuery']),
        weight=doc.get('weight', 0),
        multipliers=tuple(doc.get('multipliers', ['1x'])))

  def to_document(self) -> BreakpointDocument:
    return {
        'id': self.id,
        'label': self.label,
        'mediaQuery': self.media_query,
        'weight': self.weight,
        'multipliers': list(self.multipliers),
    }

  def sort_key(self) -> tuple[float, int, str]:
    return (self.min_width, self.weight, self.id)


def group_config_name(group: str) -> str:
  return f'breakpoint.group.{group}'


def sort_breakpoints(breakpoints: list[Breakpoint]) -> list[Breakpoint]:
  return sorted(breakpoints, key=Breakpoint.sort_key)


class BreakpointCatalog:

  def __init__(self, store: ConfigStore, cache: Optional[DocumentCache] = None):
    self.store = store
    self.groups = DocumentCache() if cache is None else cache

  def decode_group(self, group: str, doc: Any) -> list[Breakpoint]:
    name = group_config_name(group)
    try:
      breakpoints = [Breakpoint.from_document(bd) for bd in doc['breakpoints']]
    except (KeyError, TypeError) as e:
      raise InvalidConfig(name, f'missing field {e}')

    seen: set[BreakpointId] = set()
    for bp in breakpoints:
      if bp.id in seen:
        raise InvalidConfig(name, f'duplicate breakpoint "{bp.id}"')
      seen.add(bp.id)

    return sort_breakpoints(breakpoints)

  def get_breakpoints(self, group: str) -> list[Breakpoint]:
    breakpoints = self.groups.get(group)
    if breakpoints is None:
      doc = self.store.read(group_config_name(group))
      if doc is None:
        raise BreakpointGroupNotFound(group)
      breakpoints = self.decode_group(group, doc)
      self.groups.put(group, breakpoints)

    return list(breakpoints)

  def get_breakpoint(self, group: str, breakpoint_id: BreakpointId) -> Optional[Breakpoint]:
    for bp in self.get_breakpoints(group):
      if bp.id == breakpoint_id:
        return bp
    return None

  def save_group(self, group: str, breakpoints: list[Breakpoint]) -> None:
    doc: BreakpointGroupDocument = {
        'group': group,
        'breakpoints': [bp.to_document() for bp in breakpoints],
    }
    self.store.write(group_config_name(group), doc)
    self.groups.pop(group)
