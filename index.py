from aws_lambda_powertools.utilities.typing import LambdaContext

from imgresizer.resize import index as resize
from imgresizer.typing import ProxyEvent, ProxyResponse


def lambda_handler(
    event: ProxyEvent,
    _: LambdaContext,
) -> ProxyResponse:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = resize.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret
