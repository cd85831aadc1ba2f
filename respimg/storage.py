import json
import threading
import time
from typing import Any, Callable, Optional

from botocore.exceptions import ClientError
from mypy_boto3_s3.client import S3Client

from respimg.typing import S3Key

JSON_MIME = 'application/json'
CONFIG_TTL = 60.0


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


class ConfigStore:
  """Named JSON configuration documents, e.g. ``image.style.large``."""

  def read(self, name: str) -> Optional[Any]:
    raise NotImplementedError

  def write(self, name: str, doc: Any) -> None:
    raise NotImplementedError


class MemoryConfigStore(ConfigStore):

  def __init__(self, docs: Optional[dict[str, Any]] = None):
    self.docs: dict[str, str] = {}
    for name, doc in (docs or {}).items():
      self.write(name, doc)

  def read(self, name: str) -> Optional[Any]:
    if name not in self.docs:
      return None
    return json.loads(self.docs[name])

  def write(self, name: str, doc: Any) -> None:
    # Stored serialized so readers never share a mutable document.
    self.docs[name] = json_dump(doc)


class S3ConfigStore(ConfigStore):

  def __init__(self, s3: S3Client, bucket: str, key_prefix: str = ''):
    self.s3 = s3
    self.bucket = bucket
    self.key_prefix = key_prefix

  def key_from_name(self, name: str) -> S3Key:
    return S3Key(f'{self.key_prefix}{name}.json')

  def read(self, name: str) -> Optional[Any]:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=self.key_from_name(name))
    except ClientError as e:
      if is_not_found_client_error(e):
        return None
      raise e
    return json.loads(res['Body'].read())

  def write(self, name: str, doc: Any) -> None:
    self.s3.put_object(
        Body=json_dump(doc).encode(),
        Bucket=self.bucket,
        ContentType=JSON_MIME,
        Key=self.key_from_name(name))


class DocumentCache:
  """Decoded configuration documents, each kept for ``ttl`` seconds.

  Long-lived processes pick up edits made to the store by other writers once an entry expires.
  """

  def __init__(self, ttl: float = CONFIG_TTL, get_now: Callable[[], float] = time.monotonic):
    self.ttl = ttl
    self.get_now = get_now
    self.entries: dict[str, tuple[float, Any]] = {}
    self.lock = threading.Lock()

  def get(self, name: str) -> Optional[Any]:
    with self.lock:
      entry = self.entries.get(name)
    if entry is None:
      return None
    expires_at, value = entry
    if expires_at <= self.get_now():
      return None
    return value

  def put(self, name: str, value: Any) -> None:
    with self.lock:
      self.entries[name] = (self.get_now() + self.ttl, value)

  def pop(self, name: str) -> None:
    with self.lock:
      self.entries.pop(name, None)
