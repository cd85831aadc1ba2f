import dataclasses
from enum import Enum
from typing import Optional

from respimg.errors import AuthorizationError
from respimg.typing import FileUri

ACCESS_CONTENT = 'access content'


class Scheme(Enum):
  PUBLIC = 'public'
  PRIVATE = 'private'

  @property
  def route_prefix(self) -> str:
    if self == Scheme.PUBLIC:
      return '/files/'
    if self == Scheme.PRIVATE:
      return '/system/files/'
    raise Exception('system error')

  @property
  def protected(self) -> bool:
    return self == Scheme.PRIVATE


@dataclasses.dataclass(eq=True, frozen=True)
class StoredFile:
  scheme: Scheme
  target: str

  @classmethod
  def from_uri(cls, uri: FileUri | str) -> 'StoredFile':
    scheme, sep, target = uri.partition('://')
    if sep == '' or target == '':
      raise ValueError(f'invalid file uri: {uri!r}')
    try:
      return cls(Scheme(scheme), target)
    except ValueError:
      raise ValueError(f'unsupported scheme: {uri!r}')

  @property
  def uri(self) -> FileUri:
    return FileUri(f'{self.scheme.value}://{self.target}')


@dataclasses.dataclass(eq=True, frozen=True)
class Account:
  permissions: frozenset[str]

  @classmethod
  def from_header(cls, value: Optional[str]) -> 'Account':
    if value is None:
      return ANONYMOUS
    return cls(frozenset(p.strip() for p in value.split(',') if p.strip() != ''))

  def has_permission(self, permission: str) -> bool:
    return permission in self.permissions


ANONYMOUS = Account(frozenset())


def check_access(scheme: Scheme, account: Account) -> None:
  """Raise AuthorizationError unless ``account`` may download files stored in ``scheme``.

  Originals and all of their derivatives go through this same check.
  """
  if not scheme.protected:
    return
  if not account.has_permission(ACCESS_CONTENT):
    raise AuthorizationError(f'"{ACCESS_CONTENT}" required for {scheme.value} files')
