from typing import Literal, NewType, NotRequired, ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)
FileUri = NewType('FileUri', str)
StyleId = NewType('StyleId', str)
BreakpointId = NewType('BreakpointId', str)
Url = NewType('Url', str)


class Header(TypedDict):
  key: NotRequired[ReadOnly[str]]
  value: str


class S3Origin(TypedDict):
  customHeaders: dict[str, list[Header]]
  domainName: str
  path: str
  readTimeout: int
  responseCompletionTimeout: int
  authMethod: Literal['origin-access-identity', 'none']
  region: NotRequired[str]


class Origin(TypedDict):
  s3: NotRequired[S3Origin]


class Request(TypedDict):
  method: ReadOnly[Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH',
                           'CONNECT']]
  uri: HttpPath
  querystring: str
  headers: dict[str, list[Header]]
  clientIp: ReadOnly[str]
  origin: Origin


class OriginRequestConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[Literal['origin-request']]
  requestId: ReadOnly[str]


class OriginRequestRecord(TypedDict):
  config: ReadOnly[OriginRequestConfig]
  request: Request


class OriginRequestRecordContainer(TypedDict):
  cf: OriginRequestRecord


class OriginRequestEvent(TypedDict):
  Records: list[OriginRequestRecordContainer]


class OriginResponseConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[Literal['origin-response']]
  requestId: ReadOnly[str]


class Response(TypedDict):
  headers: dict[str, list[Header]]
  status: str
  statusDescription: str


class OriginResponseRecord(TypedDict):
  config: ReadOnly[OriginResponseConfig]
  request: Request
  response: Response


class OriginResponseRecordContainer(TypedDict):
  cf: OriginResponseRecord


class OriginResponseEvent(TypedDict):
  Records: list[OriginResponseRecordContainer]


class ResponseResult(TypedDict):
  body: NotRequired[str]
  bodyEncoding: NotRequired[Literal['text', 'base64']]
  headers: NotRequired[dict[str, list[Header]]]
  status: str
  statusDescription: NotRequired[str]


# Configuration documents stored in the config bucket.


class BreakpointDocument(TypedDict):
  id: str
  label: NotRequired[str]
  mediaQuery: str
  weight: NotRequired[int]
  multipliers: NotRequired[list[str]]


class BreakpointGroupDocument(TypedDict):
  group: str
  breakpoints: list[BreakpointDocument]


class EffectDocument(TypedDict):
  type: Literal['scale', 'scale_and_crop']
  width: NotRequired[int | None]
  height: NotRequired[int | None]
  upscale: NotRequired[bool]


class ImageStyleDocument(TypedDict):
  id: str
  label: NotRequired[str]
  effects: list[EffectDocument]


class MappingEntryDocument(TypedDict):
  breakpointId: str
  multiplier: str
  imageStyle: str


class MappingDocument(TypedDict):
  id: str
  label: str
  breakpointGroup: str
  mappings: list[MappingEntryDocument]


class FieldDisplaySettingsDocument(TypedDict):
  responsive_image_mapping: NotRequired[str]
  fallback_image_style: NotRequired[str]
  image_link: NotRequired[Literal['', 'none', 'file', 'content']]


class SourceImageDocument(TypedDict):
  uri: str
  width: NotRequired[int | None]
  height: NotRequired[int | None]
  alt: NotRequired[str]


class RenderRequestPayload(TypedDict):
  settings: FieldDisplaySettingsDocument
  image: SourceImageDocument
  hostUrl: NotRequired[str]


class RenderResponsePayload(TypedDict):
  markup: str
  headers: dict[str, str]
