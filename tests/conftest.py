"""Pytest fixtures: mock cmswww server, fake daemons and test configs."""
import os
import sys
import threading
from dataclasses import replace
from pathlib import Path

import pytest
import requests
from werkzeug.serving import make_server

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from cms_dataload.client import SessionClient
from cms_dataload.config import Config, Credentials
from cms_dataload.supervisor import ProcessSupervisor

import mock_cmswww_api
from mock_cmswww_api import create_mock_api_app, reset_mock_state

HELPERS = Path(__file__).resolve().parent / "helpers"
FAKE_DAEMON = str(HELPERS / "fake_daemon.py")
FAKE_DBUTIL = str(HELPERS / "fake_dbutil.py")

ADMIN = Credentials("admin@example.com", "admin", "AdminPass123")
CONTRACTOR = Credentials("contractor@example.com", "contractor", "ContractorPass123")


class MockCmswwwServer:
    """Wrapper for running the mock cmswww API in a background thread."""

    def __init__(self, host='127.0.0.1', port=0):
        self.app = create_mock_api_app()
        self.server = make_server(host, port, self.app, threaded=True)
        self.host = host
        self.port = self.server.server_port
        self.thread = None

    def start(self):
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        # Wait for server to be ready
        for _ in range(50):
            try:
                requests.get(self.url, timeout=0.5)
                break
            except requests.RequestException:
                threading.Event().wait(0.1)

    def stop(self):
        self.server.shutdown()
        self.thread.join(timeout=5)

    @property
    def url(self):
        return f"http://{self.host}:{self.port}"


class RecordingSupervisor(ProcessSupervisor):
    """ProcessSupervisor that remembers every process it spawned and stop call."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.spawned = {}
        self.stop_calls = []

    def start(self, name):
        managed = super().start(name)
        self.spawned[name] = managed.process
        return managed

    def stop(self, name):
        self.stop_calls.append(name)
        super().stop(name)


def daemon_cmd(name, *extra):
    return (sys.executable, FAKE_DAEMON, "--name", name) + tuple(extra)


@pytest.fixture
def mock_api():
    """A running mock cmswww API with fresh state."""
    reset_mock_state()
    server = MockCmswwwServer()
    server.start()
    # drop the readiness probe from the request log
    reset_mock_state()

    yield server

    server.stop()
    reset_mock_state()


@pytest.fixture
def mock_state():
    return mock_cmswww_api


@pytest.fixture
def client(mock_api, tmp_path):
    with SessionClient(mock_api.url, home_dir=str(tmp_path / "cli")) as session_client:
        yield session_client


@pytest.fixture
def admin_user(mock_api):
    """Admin account as the DB utility would have created it."""
    return mock_cmswww_api.add_user(ADMIN.email, ADMIN.username, ADMIN.password, is_admin=True)


@pytest.fixture
def make_config(tmp_path):
    """Build a Config pointing at fake daemons and the mock API."""

    def _make(api_url, **changes):
        config = Config(
            admin=ADMIN,
            contractor=CONTRACTOR,
            contractor_name="Jane Contractor",
            contractor_location="Lisbon",
            contractor_extended_public_key="tpubFAKE",
            api_url=api_url,
            verify_tls=False,
            data_dir=str(tmp_path / "data"),
            politeiad_log_file=str(tmp_path / "logs" / "politeiad.log"),
            cmswww_log_file=str(tmp_path / "logs" / "cmswww.log"),
            politeiad_data_dir=str(tmp_path / "politeiad" / "data"),
            cmswww_data_dir=str(tmp_path / "cmswww" / "data" / "testnet3"),
            cli_home_dir=str(tmp_path / "cli"),
            politeiad_cmd=daemon_cmd("politeiad"),
            cmswww_cmd=daemon_cmd("cmswww"),
            dbutil_cmd=(sys.executable, FAKE_DBUTIL, "--url", api_url),
            readiness_timeout=15.0,
            http_timeout=10.0,
        )
        return replace(config, **changes)

    return _make
