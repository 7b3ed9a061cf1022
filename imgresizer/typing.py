from typing import Literal, NewType, NotRequired, Optional, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)


class RequestIdentity(TypedDict):
  sourceIp: str
  userAgent: NotRequired[Optional[str]]


class RequestContext(TypedDict):
  accountId: str
  apiId: str
  httpMethod: str
  path: str
  requestId: str
  stage: str
  identity: NotRequired[RequestIdentity]


class ProxyEvent(TypedDict):
  resource: str
  path: str
  httpMethod: Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH',
                      'CONNECT']
  headers: NotRequired[Optional[dict[str, str]]]
  queryStringParameters: NotRequired[Optional[dict[str, str]]]
  pathParameters: NotRequired[Optional[dict[str, str]]]
  requestContext: NotRequired[RequestContext]
  body: NotRequired[Optional[str]]
  isBase64Encoded: NotRequired[bool]


class ProxyResponse(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: str
