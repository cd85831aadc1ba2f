class NotFoundError(Exception):
  pass


class MappingNotFound(NotFoundError):
  pass


class BreakpointGroupNotFound(NotFoundError):
  pass


class ImageStyleNotFound(NotFoundError):
  pass


class OriginalNotFound(NotFoundError):
  pass


class AuthorizationError(Exception):
  pass


class DerivativeError(Exception):
  pass


class InvalidConfig(Exception):

  def __init__(self, name: str, reason: str):
    super().__init__(f'invalid config "{name}": {reason}')
    self.name = name
    self.reason = reason
