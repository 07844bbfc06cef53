import asyncio
import threading

import pytest
from fastapi.testclient import TestClient

from src.api import server
from src.api.server import app, get_orchestrator, get_renderer
from src.charts.renderer import HelmRenderer
from src.cluster.errors import CancelledError
from src.common import naming

ROSTER = "OrgDefinedId,Username,Group\n#1001,#Jane Doe,Group 1\n1002,John Smith,Group 1\n"

MANIFEST = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: lab-info
---
apiVersion: v1
kind: Service
metadata:
  name: workspace
  single_instance: false
"""


class TestLabAPI:
    @pytest.fixture(autouse=True)
    def _override(self, cluster, orchestrator):
        self.cluster = cluster
        self.orchestrator = orchestrator
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        app.dependency_overrides[get_renderer] = lambda: HelmRenderer("/nonexistent/bin/helm")
        self.client = TestClient(app)
        yield
        app.dependency_overrides.pop(get_orchestrator, None)
        app.dependency_overrides.pop(get_renderer, None)

    def _post(self, data=None, files=None):
        form = {"labName": "demo", "deploymentMode": "YAML"}
        form.update(data or {})
        uploads = {
            "students": ("students.csv", ROSTER, "text/csv"),
            "config": ("lab.yaml", MANIFEST, "text/yaml"),
        }
        uploads.update(files or {})
        return self.client.post("/lab", data=form, files={k: v for k, v in uploads.items() if v is not None})

    def test_health(self) -> None:
        response = self.client.get("/")
        assert response.status_code == 200
        assert response.text == "Hello world!"

    def test_create_lab_returns_tokens(self) -> None:
        response = self._post()
        assert response.status_code == 200
        assert response.json() == {
            "jane-doe": "token-ns-demo-jane-doe-jane-doe",
            "john-smith": "token-ns-demo-john-smith-john-smith",
        }
        assert ("Service", "ns-demo-john-smith", "workspace") in self.cluster.dynamic.created

    def test_group_mode(self) -> None:
        response = self._post(data={"isIndividual": "false"})
        assert response.status_code == 200
        assert response.json() == {"group-1": "token-ns-demo-group-1-group-1"}

    def test_roster_must_be_csv(self) -> None:
        response = self._post(files={"students": ("students.txt", ROSTER, "text/plain")})
        assert response.status_code == 415
        assert self.cluster.core.namespaces == []

    def test_missing_roster(self) -> None:
        response = self._post(files={"students": None})
        assert response.status_code == 400

    def test_unknown_deployment_mode(self) -> None:
        response = self._post(data={"deploymentMode": "KUSTOMIZE"})
        assert response.status_code == 400
        assert self.cluster.core.namespaces == []

    def test_chart_url_requires_a_reference(self) -> None:
        response = self._post(data={"deploymentMode": "CHART_URL"}, files={"config": None})
        assert response.status_code == 400

    def test_render_failure_is_reported(self) -> None:
        response = self._post(data={"deploymentMode": "CHART_URL", "config": "oci://registry/lab"}, files={"config": None})
        assert response.status_code == 500
        assert "provisioning lab demo" in response.json()["detail"]

    def test_malformed_manifest(self) -> None:
        response = self._post(files={"config": ("lab.yaml", "apiVersion: v1\nkind: [oops\n", "text/yaml")})
        assert response.status_code == 422

    def test_invalid_lab_name(self) -> None:
        response = self._post(data={"labName": "Demo Lab"})
        assert response.status_code == 400
        assert self.cluster.core.namespaces == []

    def test_delete_lab(self) -> None:
        assert self._post().status_code == 200
        response = self.client.delete("/lab/demo")
        assert response.status_code == 200
        assert "ns-demo" in response.json()["deleted"]
        assert self.cluster.core.namespaces == []
        assert self.cluster.rbac.cluster_role_bindings == {}

    def test_cancel_event_reaches_identity_provisioning(self, monkeypatch) -> None:
        seen = []
        provision = self.orchestrator.rbac.provision_identity

        def recording(tenant_key, namespace, cancel=None):
            seen.append(cancel)
            return provision(tenant_key, namespace, cancel)

        monkeypatch.setattr(self.orchestrator.rbac, "provision_identity", recording)
        assert self._post().status_code == 200
        assert len(seen) == 2
        assert all(isinstance(event, threading.Event) for event in seen)

    def test_startup_creates_cluster_role(self) -> None:
        assert naming.CLUSTER_READ_ROLE not in self.cluster.rbac.cluster_roles
        with TestClient(app) as client:
            assert client.get("/").status_code == 200
        assert naming.CLUSTER_READ_ROLE in self.cluster.rbac.cluster_roles


class _GoneRequest:
    url = type("URL", (), {"path": "/lab"})()

    async def is_disconnected(self) -> bool:
        return True


def test_disconnect_sets_cancel_event(monkeypatch) -> None:
    monkeypatch.setattr(server, "DISCONNECT_POLL_SECONDS", 0.01)

    def wait_for_cancel(label, cancel):
        if cancel.wait(5):
            raise CancelledError(f"{label} cancelled")
        return label

    cancel = threading.Event()
    with pytest.raises(CancelledError, match="demo cancelled"):
        asyncio.run(server._run_until_disconnect(_GoneRequest(), cancel, wait_for_cancel, "demo"))
    assert cancel.is_set()


def test_result_is_returned_while_client_is_connected() -> None:
    class Connected(_GoneRequest):
        async def is_disconnected(self) -> bool:
            return False

    result = asyncio.run(server._run_until_disconnect(Connected(), threading.Event(), lambda value, cancel: value * 2, 21))
    assert result == 42
