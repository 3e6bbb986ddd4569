"""Tests for workflow template assembly."""

import dataclasses
import json

import pytest
from kubernetes import client

from cicd_workflow.cm_cs import ResolvedConfig
from cicd_workflow.config import CiCdConfig
from cicd_workflow.exceptions import BlobStorageConfigError, EventSerializationError, ResourceQuantityError
from cicd_workflow.models import ConfigSecretMap, Environment, Pipeline
from cicd_workflow.template_builder import (
    build_template,
    build_trigger_event,
    is_external_run,
    prepare_request,
    pvc_label,
    resolve_resources,
    serialize_trigger_event,
)


def _env(template, name):
    return next(e.value for e in template.containers[0].env if e.name == name)


class TestIsExternalRun:
    """Test cases for external-run determination."""

    def test_pre_stage_in_env(self, make_request):
        """Test that PRE stages configured to run in-env are external."""
        pipeline = Pipeline(run_pre_stage_in_env=True)

        assert is_external_run(make_request(stage_type="PRE"), pipeline, None, is_ci=False)
        assert not is_external_run(make_request(stage_type="POST"), pipeline, None, is_ci=False)

    def test_post_stage_in_env(self, make_request):
        """Test that POST stages configured to run in-env are external."""
        pipeline = Pipeline(run_post_stage_in_env=True)

        assert is_external_run(make_request(stage_type="POST"), pipeline, None, is_ci=False)
        assert not is_external_run(make_request(stage_type="PRE"), pipeline, None, is_ci=False)

    def test_ci_with_non_default_environment(self, make_request):
        """Test that CI with env id 7 is always external."""
        assert is_external_run(make_request(), Pipeline(), Environment(id=7), is_ci=True)
        assert not is_external_run(make_request(), Pipeline(), Environment(id=0), is_ci=True)
        assert not is_external_run(make_request(), Pipeline(), Environment(id=7), is_ci=False)

    def test_flag_on_request(self, make_request):
        """Test that an already external request stays external."""
        assert is_external_run(make_request(is_ext_run=True), None, None, is_ci=True)


class TestPrepareRequest:
    """Test cases for request preparation."""

    def test_pvc_disables_cache(self, make_request, pipeline, ci_cd_config):
        """Test that a pipeline PVC label disables cache push and pull."""
        request = make_request(pipeline_name="Backend-Build")

        prepared = prepare_request(
            request, pipeline, None, {"devtron.ai/ci-pvc-backend-build": "cache-pvc"}, True, ci_cd_config
        )

        assert prepared.is_pvc_mounted
        assert prepared.ignore_docker_cache_push
        assert prepared.ignore_docker_cache_pull
        assert not request.is_pvc_mounted

    def test_pvc_fallback_label(self, make_request, pipeline, ci_cd_config):
        """Test the all-environments fallback label."""
        prepared = prepare_request(
            make_request(), pipeline, None, {"devtron.ai/ci-pvc-all": "shared"}, True, ci_cd_config
        )

        assert prepared.is_pvc_mounted
        assert prepared.ignore_docker_cache_push and prepared.ignore_docker_cache_pull

    def test_no_pvc(self, make_request, pipeline, ci_cd_config):
        """Test that caching is untouched without a PVC label."""
        prepared = prepare_request(make_request(), pipeline, None, {"team": "a"}, True, ci_cd_config)

        assert not prepared.is_pvc_mounted
        assert not prepared.ignore_docker_cache_push

    def test_pvc_label_lookup(self):
        """Test PVC key normalisation."""
        assert pvc_label({"devtron.ai/ci-pvc-my-app": "p"}, "My-App") == "p"
        assert pvc_label(None, "x") == ""

    def test_logs_key_uses_stage_prefix(self, make_request, pipeline):
        """Test CI and CD log key prefixes."""
        config = CiCdConfig(ci_default_build_logs_key_prefix="ci-logs", cd_default_build_logs_key_prefix="cd-logs")
        request = make_request(workflow_prefix_for_log="42-run")

        assert prepare_request(request, pipeline, None, {}, True, config).blob_storage_logs_key == "ci-logs/42-run"
        assert prepare_request(request, pipeline, None, {}, False, config).blob_storage_logs_key == "cd-logs/42-run"

    def test_system_executor_forces_in_app_logging(self, make_request, pipeline, ci_cd_config):
        """Test that SYSTEM executions always log in-app."""
        prepared = prepare_request(make_request(workflow_executor="SYSTEM"), pipeline, None, {}, True, ci_cd_config)

        assert prepared.in_app_logging_enabled

    def test_cd_pre_stage_in_env(self, make_request, ci_cd_config):
        """Test that a PRE stage run in-env becomes external."""
        pipeline = Pipeline(run_pre_stage_in_env=True)

        prepared = prepare_request(make_request(stage_type="PRE"), pipeline, None, {}, False, ci_cd_config)

        assert prepared.is_ext_run


class TestTriggerEvent:
    """Test cases for the serialized trigger event."""

    def test_compact_and_typed(self, make_request):
        """Test compact JSON with the CI/CD discriminator."""
        payload = serialize_trigger_event(build_trigger_event(make_request(), is_ci=False))

        assert payload.startswith('{"type":"CD","ciRequest":null,"cdRequest":null,"commonWorkflowRequest":{')
        assert ", " not in payload
        assert json.loads(payload)["commonWorkflowRequest"]["workflowId"] == 42

    def test_html_characters_escaped(self, make_request):
        """Test HTML-safe escaping of angle brackets and ampersands."""
        request = make_request(trigger_by_author="<a&b>")

        payload = serialize_trigger_event(build_trigger_event(request, is_ci=True))

        assert '"triggerByAuthor":"\\u003ca\\u0026b\\u003e"' in payload
        assert json.loads(payload)["commonWorkflowRequest"]["triggerByAuthor"] == "<a&b>"

    def test_unserializable_payload(self, make_request):
        """Test that marshal failures abort."""
        request = make_request(extra_environment_variables={"A": object()})

        with pytest.raises(EventSerializationError):
            serialize_trigger_event(build_trigger_event(request, is_ci=True))


class TestResolveResources:
    """Test cases for resource selection."""

    def test_selects_by_stage(self):
        """Test independent CI and CD quantities, passed verbatim."""
        config = CiCdConfig(ci_limit_cpu="2", ci_req_mem="1Gi", cd_limit_cpu="500m")

        ci = resolve_resources(config, is_ci=True)
        cd = resolve_resources(config, is_ci=False)

        assert ci.limit_cpu == "2"
        assert ci.req_mem == "1Gi"
        assert cd.limit_cpu == "500m"

    def test_malformed_quantity(self):
        """Test that malformed quantities are fatal."""
        with pytest.raises(ResourceQuantityError) as exc_info:
            resolve_resources(CiCdConfig(cd_req_mem="lots"), is_ci=False)

        assert exc_info.value.setting == "cd_req_mem"


class TestBuildTemplate:
    """Test cases for template assembly."""

    def setup_method(self):
        """Setup test fixtures."""
        self.cluster_config = client.Configuration()
        self.resolved = ResolvedConfig(
            config_maps=(ConfigSecretMap(name="app-cm-42-ci", type="environment", data={"A": "1"}),),
            secrets=(ConfigSecretMap(name="creds-42-ci", type="volume", mount_path="/creds", data={"k": "dg=="}),),
        )

    def _build(self, request, config=None, is_ci=True, is_job=False):
        return build_template(request, self.resolved, self.cluster_config, is_job, is_ci, config or CiCdConfig())

    def test_event_embedded_twice(self, make_request):
        """Test that the request JSON is both a template field and CI_CD_EVENT."""
        template = self._build(make_request())

        assert _env(template, "CI_CD_EVENT") == template.workflow_request_json
        assert json.loads(template.workflow_request_json)["type"] == "CI"

    def test_ci_container(self, make_request):
        """Test the CI main container."""
        template = self._build(make_request())
        container = template.containers[0]

        assert container.name == "main"
        assert container.image == "quay.io/devtron/ci-runner:latest"
        assert container.security_context.privileged is True
        assert container.resources.limits == {"cpu": "0.5", "memory": "3G"}
        assert _env(template, "IMAGE_SCANNER_ENDPOINT") == "http://image-scanner-service.devtroncd:80"
        assert [e.config_map_ref.name for e in container.env_from] == ["app-cm-42-ci"]
        assert [m.mount_path for m in container.volume_mounts] == ["/creds"]
        assert [v.name for v in template.volumes] == ["creds-42-ci-vol"]
        assert template.service_account_name == "ci-runner"
        assert template.restart_policy == "Never"
        assert template.labels == {"devtron.ai/workflow-purpose": "ci"}

    def test_cd_template(self, make_request):
        """Test CD-only fields and placement."""
        template = self._build(make_request(pre_post_deploy_steps=[{"index": 1}]), is_ci=False)

        assert template.containers[0].image == "quay.io/devtron/cd-runner:latest"
        assert template.service_account_name == "cd-runner"
        assert template.node_selector == {"dedicated": "ci"}
        assert [(t.key, t.value) for t in template.tolerations] == [("dedicated", "ci")]
        assert template.wf_controller_instance_id == "devtron-runner"
        assert template.workflow_runner_id == 9
        assert template.pre_post_deploy_steps == ({"index": 1},)

    def test_node_label_overrides_cd_taint_selector(self, make_request):
        """Test that a configured node label wins over the CD taint selector."""
        config = CiCdConfig(node_label={"pool": "builds"})

        template = self._build(make_request(), config, is_ci=False)

        assert template.node_selector == {"pool": "builds"}
        assert [t.key for t in template.tolerations] == ["dedicated"]

    def test_external_job_ignores_node_label(self, make_request):
        """Test that CI jobs on external clusters are not pinned to platform nodes."""
        config = CiCdConfig(node_label={"pool": "builds"})

        internal = self._build(make_request(), config)
        external_job = self._build(make_request(is_ext_run=True), config, is_job=True)

        assert internal.node_selector == {"pool": "builds"}
        assert external_job.node_selector == {}

    def test_empty_taints_add_no_toleration(self, make_request):
        """Test that an unset taint adds neither a toleration nor a selector."""
        template = self._build(make_request(), CiCdConfig(cd_taint_key="", cd_taint_value=""), is_ci=False)

        assert template.tolerations == ()
        assert template.node_selector == {}

    @pytest.mark.parametrize("configured,in_app,archive", [
        (True, False, True),
        (True, True, False),
        (False, False, False),
        (False, True, False),
    ])
    def test_archive_logs(self, make_request, s3_storage, configured, in_app, archive):
        """Test that logs are archived only with storage and without in-app logging."""
        request = make_request(
            blob_storage_configured=configured,
            blob_storage_s3_config=s3_storage,
            in_app_logging_enabled=in_app,
        )

        assert self._build(request).archive_logs is archive

    def test_external_run_blob_storage(self, make_request, s3_storage):
        """Test that external runs only keep blob storage when allowed."""
        request = make_request(is_ext_run=True, blob_storage_configured=True, blob_storage_s3_config=s3_storage,
                               blob_storage_logs_key="arsenal-v1/42")

        kept = self._build(request, CiCdConfig(use_blob_storage_config_in_cd_workflow=True))
        dropped = self._build(request, CiCdConfig(use_blob_storage_config_in_cd_workflow=False))

        assert kept.blob_storage_configured
        assert kept.cloud_storage_key == "arsenal-v1/42"
        assert not dropped.blob_storage_configured

    def test_invalid_blob_storage(self, make_request):
        """Test that inconsistent storage aborts assembly."""
        with pytest.raises(BlobStorageConfigError):
            self._build(make_request(blob_storage_configured=True))

    def test_s3_credentials_exported(self, make_request):
        """Test AWS credentials env for S3 platforms with an access key."""
        config = CiCdConfig(blob_storage_s3_access_key="AKIA", blob_storage_s3_secret_key="s3cr3t")

        template = self._build(make_request(), config)

        assert _env(template, "AWS_ACCESS_KEY_ID") == "AKIA"
        assert _env(template, "AWS_SECRET_ACCESS_KEY") == "s3cr3t"

    def test_template_is_immutable(self, make_request):
        """Test that the template cannot be changed after assembly."""
        template = self._build(make_request())

        with pytest.raises(dataclasses.FrozenInstanceError):
            template.namespace = "other"
