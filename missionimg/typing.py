from typing import Literal, NewType, NotRequired, ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)
BlobKey = NewType('BlobKey', str)

Method = Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH', 'CONNECT']


class RequestContextHttp(TypedDict):
  method: ReadOnly[Method]
  path: ReadOnly[str]
  protocol: NotRequired[ReadOnly[str]]
  sourceIp: NotRequired[ReadOnly[str]]
  userAgent: NotRequired[ReadOnly[str]]


class RequestContext(TypedDict):
  accountId: NotRequired[ReadOnly[str]]
  apiId: NotRequired[ReadOnly[str]]
  domainName: NotRequired[ReadOnly[str]]
  requestId: NotRequired[ReadOnly[str]]
  http: RequestContextHttp


class FunctionUrlEvent(TypedDict):
  version: ReadOnly[Literal['2.0']]
  rawPath: HttpPath
  rawQueryString: str
  headers: NotRequired[dict[str, str]]
  queryStringParameters: NotRequired[dict[str, str]]
  requestContext: RequestContext
  body: NotRequired[str]
  isBase64Encoded: bool


class FunctionUrlResponse(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: NotRequired[str]
  isBase64Encoded: NotRequired[bool]
