from unittest.mock import Mock

import pytest
import requests


def mock_response(status_code=200, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    return response


@pytest.fixture
def make_session():
    """Builds a session whose GET answers from a {url: response} table."""
    def _make(routes):
        session = Mock(spec=requests.Session)
        session.headers = {}

        def _get(url, timeout=None):
            answer = routes[url]
            if isinstance(answer, Exception):
                raise answer
            return answer

        session.get.side_effect = _get
        return session
    return _make
