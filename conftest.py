import datetime
import io
import threading
from collections import Counter
from typing import Any, Callable, Optional

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from pyvips import Image  # type: ignore


def not_found(operation: str, code: str) -> ClientError:
  return ClientError({'Error': {'Code': code, 'Message': 'Not Found'}}, operation)


class FakeS3:
  """The subset of the S3 client used by respimg, kept in memory."""

  def __init__(self) -> None:
    self.objects: dict[tuple[str, str], dict[str, Any]] = {}
    self.puts: Counter[tuple[str, str]] = Counter()
    self.lock = threading.Lock()

  def put_object(
      self,
      Body: bytes | str | io.IOBase,
      Bucket: str,
      Key: str,
      ContentType: str = 'binary/octet-stream',
      Metadata: Optional[dict[str, str]] = None,
  ) -> dict[str, Any]:
    if isinstance(Body, str):
      data = Body.encode()
    elif isinstance(Body, bytes):
      data = Body
    else:
      data = Body.read()

    with self.lock:
      self.objects[(Bucket, Key)] = {
          'data': data,
          'ContentType': ContentType,
          'Metadata': dict(Metadata or {}),
          # S3 keeps LastModified at second precision.
          'LastModified': datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0),
      }
      self.puts[(Bucket, Key)] += 1
    return {}

  def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
    with self.lock:
      if (Bucket, Key) not in self.objects:
        raise not_found('HeadObject', '404')
      obj = self.objects[(Bucket, Key)]
      return {
          'ContentType': obj['ContentType'],
          'ContentLength': len(obj['data']),
          'LastModified': obj['LastModified'],
          'Metadata': dict(obj['Metadata']),
      }

  def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
    with self.lock:
      if (Bucket, Key) not in self.objects:
        raise not_found('GetObject', 'NoSuchKey')
      obj = self.objects[(Bucket, Key)]
      return {
          'Body': StreamingBody(io.BytesIO(obj['data']), len(obj['data'])),
          'ContentType': obj['ContentType'],
          'ContentLength': len(obj['data']),
          'LastModified': obj['LastModified'],
          'Metadata': dict(obj['Metadata']),
      }

  def touch(self, Bucket: str, Key: str, last_modified: datetime.datetime) -> None:
    with self.lock:
      self.objects[(Bucket, Key)]['LastModified'] = last_modified

  def exists(self, Bucket: str, Key: str) -> bool:
    return (Bucket, Key) in self.objects


@pytest.fixture
def s3() -> FakeS3:
  return FakeS3()


@pytest.fixture
def png() -> Callable[[int, int], bytes]:

  def fn(width: int, height: int) -> bytes:
    return Image.black(width, height, bands=3).write_to_buffer('.png')

  return fn


def image_size(data: bytes) -> tuple[int, int]:
  image = Image.new_from_buffer(data, '')
  return (image.get('width'), image.get('height'))


@pytest.fixture
def size_of() -> Callable[[bytes], tuple[int, int]]:
  return image_size
