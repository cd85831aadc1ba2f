import pytest

from respimg.errors import BreakpointGroupNotFound, InvalidConfig
from respimg.storage import DocumentCache, MemoryConfigStore

from .index import Breakpoint, BreakpointCatalog, parse_min_width

GROUP = 'responsive_image_test_module'


def breakpoint_doc(id: str, media_query: str, weight: int = 0) -> dict:
  return {
      'id': f'{GROUP}.{id}',
      'label': id,
      'mediaQuery': media_query,
      'weight': weight,
      'multipliers': ['1x'],
  }


@pytest.fixture
def catalog() -> BreakpointCatalog:
  return BreakpointCatalog(
      MemoryConfigStore({
          f'breakpoint.group.{GROUP}': {
              'group': GROUP,
              'breakpoints': [
                  breakpoint_doc('wide', '(min-width: 851px)', 2),
                  breakpoint_doc('mobile', '(min-width: 0px)', 0),
                  breakpoint_doc('narrow', '(min-width: 560px)', 1),
              ],
          },
      }))


@pytest.mark.parametrize(
    'media_query,expected', [
        ('(min-width: 0px)', 0.0),
        ('(min-width: 560px)', 560.0),
        ('all and (min-width:851px) and (orientation: landscape)', 851.0),
        ('(min-width: 37.5px)', 37.5),
        ('all', 0.0),
        ('', 0.0),
    ])
def test_parse_min_width(media_query: str, expected: float) -> None:
  assert parse_min_width(media_query) == expected


def test_breakpoints_ordered_by_min_width(catalog: BreakpointCatalog) -> None:
  bps = catalog.get_breakpoints(GROUP)

  assert [bp.id for bp in bps] == [f'{GROUP}.mobile', f'{GROUP}.narrow', f'{GROUP}.wide']
  assert [bp.min_width for bp in bps] == [0.0, 560.0, 851.0]
  assert bps[1].media_query == '(min-width: 560px)'


def test_zero_width_breakpoint_first_whatever_its_weight() -> None:
  catalog = BreakpointCatalog(
      MemoryConfigStore({
          'breakpoint.group.g': {
              'group': 'g',
              'breakpoints': [
                  {'id': 'g.wide', 'mediaQuery': '(min-width: 851px)', 'weight': -10},
                  {'id': 'g.all', 'mediaQuery': 'all', 'weight': 10},
              ],
          },
      }))

  assert [bp.id for bp in catalog.get_breakpoints('g')] == ['g.all', 'g.wide']


def test_unknown_group(catalog: BreakpointCatalog) -> None:
  with pytest.raises(BreakpointGroupNotFound):
    catalog.get_breakpoints('nope')


def test_duplicate_breakpoint_ids() -> None:
  catalog = BreakpointCatalog(
      MemoryConfigStore({
          'breakpoint.group.g': {
              'group': 'g',
              'breakpoints': [
                  {'id': 'g.a', 'mediaQuery': '(min-width: 0px)'},
                  {'id': 'g.a', 'mediaQuery': '(min-width: 10px)'},
              ],
          },
      }))

  with pytest.raises(InvalidConfig):
    catalog.get_breakpoints('g')


def test_missing_media_query() -> None:
  catalog = BreakpointCatalog(
      MemoryConfigStore({'breakpoint.group.g': {'group': 'g', 'breakpoints': [{'id': 'g.a'}]}}))

  with pytest.raises(InvalidConfig):
    catalog.get_breakpoints('g')


def test_get_breakpoint(catalog: BreakpointCatalog) -> None:
  bp = catalog.get_breakpoint(GROUP, f'{GROUP}.narrow')
  assert bp is not None
  assert bp.min_width == 560.0
  assert catalog.get_breakpoint(GROUP, f'{GROUP}.huge') is None


def test_save_group_replaces_cached(catalog: BreakpointCatalog) -> None:
  catalog.get_breakpoints(GROUP)

  catalog.save_group(GROUP, [Breakpoint.from_document(breakpoint_doc('only', 'all'))])

  assert [bp.id for bp in catalog.get_breakpoints(GROUP)] == [f'{GROUP}.only']


def test_group_reloads_after_ttl() -> None:
  now = [0.0]
  docs = {
      'breakpoint.group.g': {
          'group': 'g',
          'breakpoints': [{'id': 'g.wide', 'mediaQuery': '(min-width: 851px)'}],
      },
  }
  cache = DocumentCache(ttl=60, get_now=lambda: now[0])
  catalog = BreakpointCatalog(MemoryConfigStore(docs), cache)
  assert catalog.get_breakpoints('g')[0].media_query == '(min-width: 851px)'

  # Another writer edits the stored group.
  catalog.store.write(
      'breakpoint.group.g', {
          'group': 'g',
          'breakpoints': [{'id': 'g.wide', 'mediaQuery': '(min-width: 1024px)'}],
      })

  now[0] = 30.0
  assert catalog.get_breakpoints('g')[0].media_query == '(min-width: 851px)'
  now[0] = 60.0
  bp = catalog.get_breakpoints('g')[0]
  assert bp.media_query == '(min-width: 1024px)'
  assert bp.min_width == 1024.0
