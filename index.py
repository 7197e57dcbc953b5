from aws_lambda_powertools.utilities.typing import LambdaContext

from missionimg.images import index as images
from missionimg.typing import FunctionUrlEvent, FunctionUrlResponse
from missionimg.upload import index as upload


def images_lambda_handler(
    event: FunctionUrlEvent,
    _: LambdaContext,
) -> FunctionUrlResponse:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = images.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def upload_lambda_handler(
    event: FunctionUrlEvent,
    _: LambdaContext,
) -> FunctionUrlResponse:
  return upload.lambda_main(event)
