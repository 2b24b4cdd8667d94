"""Shared fixtures: configuration, log files and a fake collector API."""

import datetime
import json

import pytest
import requests

import printwatch_collector as pwc


HEADER = "Time,User,Pages,Copies,Printer,Document Name,Client,Paper Size,Language,Height,Width,Duplex,Grayscale,Size"
SCENARIO_ROW = "2024-01-05 09:00:00,alice,3,2,HP1,report.pdf,PC1,A4,EN,0,0,0,GRAYSCALE,120KB"
NETWORK = ('10.0.0.5', 'aa:bb:cc:dd:ee:ff')


def make_row(minute, user='alice', document='report.pdf'):
    return f"2024-01-05 09:{minute:02d}:00,{user},1,1,HP1,{document},PC1,A4,EN,0,0,0,GRAYSCALE,10KB"


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        if text is None:
            text = json.dumps(body) if body is not None else ''
        self.text = text

    def json(self):
        if self._body is None:
            return json.loads(self.text)
        return self._body


class FakeCollector:
    """In-memory collector API installed in place of requests.post."""

    def __init__(self):
        self.stored = []
        self.calls = []
        self.down = False
        self.verify_status = 200
        self.verify_text = None
        self.ingest_status = 201

    def post(self, url, **kwargs):
        payload = kwargs.get('json')
        self.calls.append((url, payload, kwargs))
        if self.down:
            raise requests.ConnectionError("collector unreachable")
        if url.endswith('/central/verifyimpression'):
            if self.verify_text is not None:
                return FakeResponse(self.verify_status, text=self.verify_text)
            exists = payload in self.stored
            return FakeResponse(self.verify_status, {'status': 'true' if exists else 'false'})
        if url.endswith('/central/receptprintreq'):
            if self.ingest_status in (200, 201):
                self.stored.append(payload)
            return FakeResponse(self.ingest_status, {'ok': True})
        return FakeResponse(404, text='not found')

    def calls_to(self, suffix):
        return [call for call in self.calls if call[0].endswith(suffix)]


@pytest.fixture
def collector_api(monkeypatch):
    api = FakeCollector()
    monkeypatch.setattr(pwc.requests, 'post', api.post)
    return api


@pytest.fixture
def config(tmp_path):
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return {
        'sector': 'Finance',
        'company_id': 7,
        'log_dir': str(log_dir),
        'api_base_url': 'http://collector.test',
        'polling_interval_seconds': 10,
        'timeout_seconds': 30,
        'tls': {},
    }


@pytest.fixture
def day():
    return datetime.date(2024, 1, 5)


@pytest.fixture
def write_log(config):
    """Append lines to a day's log file, creating it with a header first."""
    def _write(day, lines, header=True, newline=True):
        path = pwc.log_file_path(config['log_dir'], day)
        content = ''
        if header:
            content += HEADER + "\n"
        content += "".join(line + ("\n" if newline else "") for line in lines)
        with open(path, 'a', encoding='utf-8', newline='') as f:
            f.write(content)
        return path
    return _write


@pytest.fixture
def event(config):
    return pwc.parse_record(SCENARIO_ROW.split(','), config, network_info=lambda: NETWORK)
