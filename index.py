from aws_lambda_powertools.utilities.typing import LambdaContext

from respimg.originrequest import index as originrequest
from respimg.originresponse import index as originresponse
from respimg.render import index as render
from respimg.typing import (
    OriginRequestEvent,
    OriginResponseEvent,
    RenderRequestPayload,
    RenderResponsePayload,
    Request,
    Response,
    ResponseResult
)


def origin_request_lambda_handler(
    event: OriginRequestEvent,
    _: LambdaContext,
) -> Request | ResponseResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = originrequest.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def render_lambda_handler(
    event: RenderRequestPayload,
    _: LambdaContext,
) -> RenderResponsePayload:
  return render.lambda_render(event)


def origin_response_lambda_handler(
    event: OriginResponseEvent,
    _: LambdaContext,
) -> Response:
  cf = event['Records'][0]['cf']
  return originresponse.lambda_main(cf['request'], cf['response'])
