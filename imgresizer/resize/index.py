import dataclasses
import datetime
import logging
import os
import re
import sys
import time
from collections.abc import Mapping
from http import HTTPStatus
from logging import Logger
from tempfile import NamedTemporaryFile
from typing import Any, Optional
from urllib import parse

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from botocore.response import StreamingBody
from mypy_boto3_s3.client import S3Client
from pythonjsonlogger.json import JsonFormatter
from pyvips import Error as VipsError  # type: ignore
from pyvips import Image  # type: ignore

import imgresizer
from imgresizer.typing import HttpPath, ProxyEvent, ProxyResponse, S3Key

LIFETIME_TAG = 'lifetime'
LIFETIME_TRANSIENT = 'transient'

DEFAULT_QUALITY = 75

request_path_re = re.compile(r'((\d+)x(\d+))/(.+)')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgresizer.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


class ResizeError(Exception):
  pass


class MalformedPath(ResizeError):
  pass


class ResolutionDenied(ResizeError):
  pass


class SourceUnavailable(ResizeError):
  pass


class DecodeFailed(ResizeError):
  pass


class CacheWriteFailed(ResizeError):
  pass


class InvalidConfig(ResizeError):
  pass


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(frozen=True)
class ResizeParam:
  path: HttpPath
  resolution: str
  size: Size
  source: S3Key

  @classmethod
  def from_path(cls, path: Optional[str]) -> 'ResizeParam':
    if path is None:
      raise MalformedPath('path not given')

    m = request_path_re.fullmatch(path)
    if m is None:
      raise MalformedPath(f'invalid path: {path}')

    width = int(m[2])
    height = int(m[3])
    if width <= 0 or height <= 0:
      raise MalformedPath(f'invalid resolution: {m[1]}')

    return cls(HttpPath(path), m[1], Size(width, height), S3Key(m[4]))

  @property
  def cache_key(self) -> S3Key:
    return S3Key(self.path)


@dataclasses.dataclass(eq=True, frozen=True)
class ResolutionPolicy:
  """Allow-list of resolution tokens such as ``100x100``.

  An empty allow-list admits every resolution. Otherwise the token must match
  an entry exactly, so ``0100x100`` is not the same as ``100x100``.
  """
  allowed: tuple[str, ...]

  @classmethod
  def from_str(cls, s: str) -> 'ResolutionPolicy':
    return cls(tuple(r.strip() for r in s.split(',') if r.strip() != ''))

  def admits(self, resolution: str) -> bool:
    return len(self.allowed) == 0 or resolution in self.allowed


@dataclasses.dataclass(eq=True, frozen=True)
class EncoderCapability:
  suffix: str
  content_type: str
  quality: Optional[int] = None

  def encode(self, image: Image) -> bytes:
    if self.quality is None:
      return image.write_to_buffer(self.suffix)
    return image.write_to_buffer(self.suffix, Q=self.quality)


class ExtensionRegistry:
  capabilities: dict[str, EncoderCapability]

  def __init__(self, capabilities: dict[str, EncoderCapability]):
    self.capabilities = capabilities

  def lookup(self, ext: Optional[str]) -> Optional[EncoderCapability]:
    if ext is None:
      return None
    return self.capabilities.get(ext)

  def candidates(self) -> tuple[str, ...]:
    # Registration order is the probing order.
    return tuple(self.capabilities)


JPEG_CAPABILITY = EncoderCapability('.jpg', 'image/jpeg', DEFAULT_QUALITY)

default_registry = ExtensionRegistry({
    'jpg': JPEG_CAPABILITY,
    'jpeg': JPEG_CAPABILITY,
    'png': EncoderCapability('.png', 'image/png'),
    'webp': EncoderCapability('.webp', 'image/webp', DEFAULT_QUALITY),
})


@dataclasses.dataclass(frozen=True)
class ImageKey:
  key: S3Key
  base: str
  extension: Optional[str]

  @classmethod
  def from_key(cls, key: S3Key) -> 'ImageKey':
    base, dot, ext = key.rpartition('.')
    if dot == '' or ext == '' or '/' in ext:
      return cls(key, key, None)
    return cls(key, base, ext.lower())

  def with_extension(self, ext: str) -> S3Key:
    if ext == self.extension:
      return self.key
    return S3Key(f'{self.base}.{ext}')


@dataclasses.dataclass(frozen=True)
class Found:
  key: S3Key
  body: StreamingBody


@dataclasses.dataclass(frozen=True)
class NotFound:
  key: S3Key


@dataclasses.dataclass(frozen=True)
class TransportFailure:
  key: S3Key
  reason: str


FetchResult = Found | NotFound | TransportFailure


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  reason: str
  location: Optional[str] = None
  vips_us: Optional[int] = None
  img_size: Optional[int] = None

  def to_proxy_response(self) -> ProxyResponse:
    headers = {} if self.location is None else {'location': self.location}
    return {
        'statusCode': int(self.status),
        'headers': headers,
        'body': '',
    }


@dataclasses.dataclass(eq=True, frozen=True)
class XParams:
  region: Optional[str]
  bucket: str
  url: str
  prefix: str
  resolution_policy: ResolutionPolicy

  @classmethod
  def from_environ(cls, environ: Mapping[str, str]) -> 'XParams':
    try:
      bucket = environ['BUCKET']
      url = environ['URL']
    except KeyError as e:
      raise InvalidConfig(f'environment variable not found: {e}') from e

    if bucket == '' or url == '':
      raise InvalidConfig('BUCKET and URL must not be empty')

    return cls(
        region=environ.get('AWS_REGION') or None,
        bucket=bucket,
        url=url.rstrip('/'),
        prefix=environ.get('PREFIX', '').strip('/'),
        resolution_policy=ResolutionPolicy.from_str(environ.get('ALLOWED_RESOLUTIONS', '')))


class ResizeServer:
  instances: dict[XParams, 'ResizeServer'] = {}

  def __init__(
      self,
      log: logging.Logger,
      s3: S3Client,
      bucket: str,
      url: str,
      prefix: str,
      resolution_policy: ResolutionPolicy,
      registry: ExtensionRegistry = default_registry,
  ):
    self.log = log
    self.s3 = s3
    self.bucket = bucket
    self.url = url
    self.prefix = prefix
    self.resolution_policy = resolution_policy
    self.registry = registry
    self.log_context = {'path': ''}

  @classmethod
  def from_environ(cls, log: Logger, environ: Mapping[str, str]) -> 'ResizeServer':
    try:
      params = XParams.from_environ(environ)
    except InvalidConfig as e:
      log.error({
          'message': 'invalid configuration',
          'reason': str(e),
      })
      raise

    if params not in cls.instances:
      s3 = boto3.client('s3', region_name=params.region)
      cls.instances[params] = cls(
          log=log,
          s3=s3,
          bucket=params.bucket,
          url=params.url,
          prefix=params.prefix,
          resolution_policy=params.resolution_policy)

    return cls.instances[params]

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def prefixed_key(self, key: S3Key) -> S3Key:
    return key if self.prefix == '' else S3Key(f'{self.prefix}/{key}')

  def redirect_url(self, key: S3Key) -> str:
    return f'{self.url}/{key}'

  def try_fetch(self, key: S3Key) -> FetchResult:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        return NotFound(key)
      return TransportFailure(key, str(e))
    except BotoCoreError as e:
      return TransportFailure(key, str(e))

    return Found(key, res['Body'])

  def fetch_source(self, image_key: ImageKey) -> Found:
    for ext in self.registry.candidates():
      match self.try_fetch(image_key.with_extension(ext)):
        case Found() as found:
          return found
        case NotFound(key=key):
          self.log_debug('source not found', {'key': key})
        case TransportFailure(key=key, reason=reason):
          # TODO: retry with backoff instead of moving on to the next candidate.
          self.log_warning('failed to fetch source', {'key': key, 'reason': reason})
        case _:
          raise Exception('system error')

    raise SourceUnavailable(f'no source found for {image_key.key}')

  def transform(self, source: Found, target: Size, capability: EncoderCapability) -> bytes:
    with NamedTemporaryFile(delete_on_close=False) as orig:
      for chunk in source.body.iter_chunks():
        orig.write(chunk)
      orig.close()

      # Pixels are decoded lazily, so broken data may only surface while encoding.
      try:
        image: Image = Image.thumbnail(
            orig.name, target.width, height=target.height, size='down')
        resized = capability.encode(image)
      except VipsError as e:
        raise DecodeFailed(f'failed to resize {source.key}: {e}') from e

      self.log_debug(
          'resize param', {
              'source': source.key,
              'target': target,
              'resized': Size.from_image(image),
          })

      return resized

  def store_derivative(self, key: S3Key, body: bytes, capability: EncoderCapability) -> None:
    try:
      self.s3.put_object(
          Bucket=self.bucket,
          Key=key,
          Body=body,
          ContentType=capability.content_type,
          Tagging=parse.urlencode({LIFETIME_TAG: LIFETIME_TRANSIENT}))
    except (ClientError, BotoCoreError) as e:
      raise CacheWriteFailed(f'failed to store {key}: {e}') from e

  def run(self, path: Optional[str]) -> InstantResponse:
    resize_param = ResizeParam.from_path(path)

    if not self.resolution_policy.admits(resize_param.resolution):
      raise ResolutionDenied(f'resolution not allowed: {resize_param.resolution}')

    image_key = ImageKey.from_key(self.prefixed_key(resize_param.source))
    capability = self.registry.lookup(image_key.extension)
    if capability is None:
      return InstantResponse(
          status=HTTPStatus.MOVED_PERMANENTLY,
          reason='unsupported extension',
          location=image_key.key)

    source = self.fetch_source(image_key)

    start_ns = time.time_ns()
    resized = self.transform(source, resize_param.size, capability)
    vips_us = (time.time_ns() - start_ns) // 1000

    self.store_derivative(resize_param.cache_key, resized, capability)

    return InstantResponse(
        status=HTTPStatus.MOVED_PERMANENTLY,
        reason='resized',
        location=self.redirect_url(resize_param.cache_key),
        vips_us=vips_us,
        img_size=len(resized))

  def process(self, path: Optional[str]) -> InstantResponse:
    try:
      return self.run(path)
    except (MalformedPath, ResolutionDenied, SourceUnavailable) as e:
      return InstantResponse(status=HTTPStatus.FORBIDDEN, reason=str(e))
    except Exception as e:
      self.log_error('error during process()', {'reason': str(e), 'type': type(e).__name__})
      raise

  def set_log_context(self, path: Optional[str]) -> None:
    self.log_context = {'path': '' if path is None else path}


def lambda_main(event: ProxyEvent) -> ProxyResponse:
  server = ResizeServer.from_environ(logger, os.environ)

  qs = event.get('queryStringParameters') or {}
  path = qs.get('path')

  server.set_log_context(path)
  result = server.process(path)

  server.log_debug(
      'responded', {
          'status': result.status,
          'location': result.location,
          'reason': result.reason,
          'img_size': result.img_size,
          'vips_us': result.vips_us,
      })

  return result.to_proxy_response()
