from typing import Any

import pytest

from imgresizer.resize import index as resize
from index import lambda_handler


def test_lambda_handler(monkeypatch: pytest.MonkeyPatch) -> None:
  calls: list[Any] = []

  def lambda_main(event: Any) -> Any:
    calls.append(event)
    return {'statusCode': 403, 'headers': {}, 'body': ''}

  monkeypatch.setattr(resize, 'lambda_main', lambda_main)

  event = {
      'resource': '/',
      'path': '/',
      'httpMethod': 'GET',
      'queryStringParameters': {
          'path': 'photos/cat.png',
      },
  }

  assert lambda_handler(event, None) == {'statusCode': 403, 'headers': {}, 'body': ''}  # type: ignore
  assert calls == [event]
