import json
import os
from typing import Any
from unittest import mock

from flagkit import ProjectConfig

DATAFILES_DIR = os.environ.get("DATAFILES_DIR", os.path.join(os.path.dirname(__file__), "datafiles"))


def load_datafile(name: str = "project.json", **overrides: Any) -> dict[str, Any]:
    with open(os.path.join(DATAFILES_DIR, name), encoding="utf-8") as f:
        d = json.load(f)
    d.update(overrides)
    return d


def load_config(name: str = "project.json", **overrides: Any) -> ProjectConfig:
    return ProjectConfig.from_datafile(load_datafile(name, **overrides))


def fake_response(status_code: int = 200, body: Any = None, headers: dict[str, str] | None = None) -> mock.Mock:
    """
    A stand-in for requests.Response. Dict and list bodies are JSON encoded.
    """
    resp = mock.Mock()
    resp.status_code = status_code
    resp.headers = headers or {}
    if isinstance(body, (dict, list)):
        resp.content = json.dumps(body).encode("utf-8")
        resp.json.return_value = body
    else:
        resp.content = body if body is not None else b""
        resp.json.side_effect = ValueError("not json")
    return resp


class RecordingDispatcher:
    """An event dispatcher that keeps every log event it was handed."""

    def __init__(self, result: bool = True):
        self.result = result
        self.log_events = []

    def dispatch_event(self, log_event) -> bool:
        self.log_events.append(log_event)
        return self.result
