"""Tests for configmap/secret resolution."""

import base64
from unittest.mock import Mock

import pytest

from cicd_workflow.cm_cs import (
    ConfigurationResolver,
    container_env_from_cm_cs,
    existing_workflow_name,
    extract_volumes,
    from_global_configs,
    global_workflow_name,
    parse_stage_config_names,
)
from cicd_workflow.exceptions import ConfigLookupError, ConfigMapSecretParseError
from cicd_workflow.models import ConfigSecretMap, GlobalCmCsConfig, Pipeline, PipelineType
from cicd_workflow.ports import AppConfigStore, GlobalCmCsStore


class TestWorkflowNames:
    """Test cases for workflow-scoped object names."""

    def test_global_names(self, make_request):
        """Test that global names are lower-cased and scoped by workflow or runner."""
        request = make_request(workflow_id=42, workflow_runner_id=9)

        assert global_workflow_name("Registry-Creds", request, is_ci=True) == "registry-creds-42-ci"
        assert global_workflow_name("Registry-Creds", request, is_ci=False) == "registry-creds-9-cd"

    def test_existing_names(self, make_request):
        """Test that app config names keep their case."""
        request = make_request(workflow_id=42, workflow_runner_id=9)

        assert existing_workflow_name("App-CM", request, is_ci=True) == "App-CM-42-ci"
        assert existing_workflow_name("App-CM", request, is_ci=False) == "App-CM-42-9"


class TestParseStageConfigNames:
    """Test cases for the stage allow-list parser."""

    def test_pre_stage(self, pipeline):
        """Test that stage PRE uses the pre-stage allow-list."""
        config_maps, secrets = parse_stage_config_names(pipeline, "PRE")

        assert config_maps == {"app-cm"}
        assert secrets == {"app-secret"}

    def test_other_stages_use_post_list(self, pipeline):
        """Test that any stage other than PRE uses the post-stage allow-list."""
        for stage in ("POST", ""):
            config_maps, secrets = parse_stage_config_names(pipeline, stage)

            assert config_maps == set()
            assert secrets == {"db-secret"}

    def test_json_null(self):
        """Test that a null allow-list selects nothing."""
        pipeline = Pipeline(id=1, post_stage_config_map_secret_names="null")

        assert parse_stage_config_names(pipeline, "POST") == (set(), set())

    @pytest.mark.parametrize("raw", ["", "{not json", "[1, 2]", '{"configMaps": [1]}'])
    def test_malformed(self, raw):
        """Test that malformed allow-lists abort resolution."""
        pipeline = Pipeline(id=1, pre_stage_config_map_secret_names=raw)

        with pytest.raises(ConfigMapSecretParseError) as exc_info:
            parse_stage_config_names(pipeline, "PRE")

        assert exc_info.value.pipeline_id == 1


class TestFromGlobalConfigs:
    """Test cases for conversion of global definitions."""

    def test_split_and_encode(self):
        """Test that configmaps and secrets are split and secret values encoded."""
        config_maps, secrets = from_global_configs([
            GlobalCmCsConfig(name="proxy", config_type="CONFIGMAP", type="environment", data={"HTTP_PROXY": "p"}),
            GlobalCmCsConfig(name="creds", config_type="SECRET", type="volume", mount_path="/creds",
                             data={"token": "abc"}),
        ])

        assert [cm.name for cm in config_maps] == ["proxy"]
        assert config_maps[0].data == {"HTTP_PROXY": "p"}
        assert secrets[0].data == {"token": base64.b64encode(b"abc").decode()}
        assert secrets[0].mount_path == "/creds"

    def test_unknown_type(self):
        """Test that unknown config types are rejected."""
        with pytest.raises(ConfigMapSecretParseError):
            from_global_configs([GlobalCmCsConfig(name="x", config_type="FILE")])


class TestConfigurationResolver:
    """Test cases for ConfigurationResolver."""

    def setup_method(self):
        """Setup test fixtures."""
        self.global_store = Mock(spec=GlobalCmCsStore)
        self.app_store = Mock(spec=AppConfigStore)
        self.global_store.find_all_active_by_pipeline_type.return_value = [
            GlobalCmCsConfig(name="Proxy", config_type="CONFIGMAP", type="environment", data={"A": "1"}),
            GlobalCmCsConfig(name="registry", config_type="SECRET", type="environment", data={"B": "2"}),
        ]
        self.resolver = ConfigurationResolver(self.global_store, self.app_store)

    def test_ci_includes_globals_then_all_app_configs(self, make_request, pipeline, app_config_maps, app_secrets):
        """Test CI resolution order and naming."""
        self.app_store.get_cm_secret.return_value = (app_config_maps, app_secrets)

        resolved = self.resolver.resolve(make_request(), pipeline, is_job=False, is_ci=True)

        assert [cm.name for cm in resolved.config_maps] == [
            "proxy-42-ci", "app-cm-42-ci", "settings-42-ci", "shared-cm",
        ]
        assert [s.name for s in resolved.secrets] == ["registry-42-ci", "app-secret-42-ci", "db-secret-42-ci"]
        self.global_store.find_all_active_by_pipeline_type.assert_called_once_with(PipelineType.CI)
        self.app_store.get_cm_secret.assert_called_once_with(3, 5, False)

    def test_app_config_names_are_suffixed(self, make_request, pipeline, app_config_maps, app_secrets):
        """Test that every non-external app entry ends with the workflow suffix."""
        self.app_store.get_cm_secret.return_value = (app_config_maps, app_secrets)

        ci = self.resolver.resolve(make_request(is_ext_run=True), pipeline, is_job=False, is_ci=True)
        cd = self.resolver.resolve(make_request(is_ext_run=True, stage_type="PRE"), pipeline, is_job=False, is_ci=False)

        for entry in ci.config_maps + ci.secrets:
            assert entry.external or entry.name.endswith("-42-ci")
        for entry in cd.config_maps + cd.secrets:
            assert entry.external or entry.name.endswith("-42-9")

    def test_external_run_skips_globals(self, make_request, pipeline):
        """Test that external runs carry no global configs."""
        self.app_store.get_cm_secret.return_value = ([], [])

        resolved = self.resolver.resolve(make_request(is_ext_run=True), pipeline, is_job=False, is_ci=True)

        assert resolved.config_maps == ()
        assert resolved.secrets == ()
        self.global_store.find_all_active_by_pipeline_type.assert_not_called()

    def test_cd_filters_by_allow_list(self, make_request, pipeline, app_config_maps, app_secrets):
        """Test that CD only carries allow-listed app configs."""
        self.app_store.get_cm_secret.return_value = (app_config_maps, app_secrets)

        resolved = self.resolver.resolve(make_request(stage_type="PRE"), pipeline, is_job=False, is_ci=False)

        assert [cm.name for cm in resolved.config_maps] == ["proxy-9-cd", "app-cm-42-9"]
        assert [s.name for s in resolved.secrets] == ["registry-9-cd", "app-secret-42-9"]
        self.global_store.find_all_active_by_pipeline_type.assert_called_once_with(PipelineType.CD)

    def test_malformed_allow_list_aborts(self, make_request):
        """Test that a malformed allow-list fails before app configs are read."""
        pipeline = Pipeline(id=4, pre_stage_config_map_secret_names="{")

        with pytest.raises(ConfigMapSecretParseError):
            self.resolver.resolve(make_request(stage_type="PRE"), pipeline, is_job=False, is_ci=False)

        self.app_store.get_cm_secret.assert_not_called()

    def test_global_store_failure(self, make_request, pipeline):
        """Test that global lookup failures are surfaced as lookup errors."""
        self.global_store.find_all_active_by_pipeline_type.side_effect = RuntimeError("db down")

        with pytest.raises(ConfigLookupError) as exc_info:
            self.resolver.resolve(make_request(), pipeline, is_job=False, is_ci=True)

        assert exc_info.value.source == "global"

    def test_app_store_failure(self, make_request, pipeline):
        """Test that app lookup failures are surfaced as lookup errors."""
        self.app_store.get_cm_secret.side_effect = RuntimeError("db down")

        with pytest.raises(ConfigLookupError) as exc_info:
            self.resolver.resolve(make_request(), pipeline, is_job=True, is_ci=True)

        assert exc_info.value.source == "app"

    def test_inputs_are_not_mutated(self, make_request, pipeline, app_config_maps, app_secrets):
        """Test that stored entries keep their original names."""
        self.app_store.get_cm_secret.return_value = (app_config_maps, app_secrets)

        self.resolver.resolve(make_request(), pipeline, is_job=False, is_ci=True)

        assert app_config_maps[0].name == "app-cm"
        assert self.global_store.find_all_active_by_pipeline_type.return_value[0].name == "Proxy"


class TestContainerWiring:
    """Test cases for volumes, mounts and envFrom sources."""

    def test_extract_volumes(self, app_config_maps, app_secrets):
        """Test that volume-type entries get a volume, configmaps first."""
        volumes = extract_volumes(app_config_maps, app_secrets)

        assert [v.name for v in volumes] == ["settings-vol", "db-secret-vol"]
        assert volumes[0].config_map.name == "settings"
        assert volumes[1].secret.secret_name == "db-secret"
        assert volumes[1].secret.default_mode == 0o400

    def test_env_from_and_mounts(self, app_config_maps, app_secrets):
        """Test envFrom references and per-key sub-path mounts."""
        env_from, mounts = container_env_from_cm_cs(app_config_maps, app_secrets)

        assert [e.config_map_ref.name for e in env_from if e.config_map_ref] == ["app-cm", "shared-cm"]
        assert [e.secret_ref.name for e in env_from if e.secret_ref] == ["app-secret"]
        assert [(m.name, m.mount_path, m.sub_path) for m in mounts] == [
            ("settings-vol", "/etc/settings", None),
            ("db-secret-vol", "/etc/db/user", "user"),
            ("db-secret-vol", "/etc/db/password", "password"),
        ]

    def test_volume_without_mount_path(self):
        """Test that volume entries need a mount path."""
        with pytest.raises(ConfigMapSecretParseError):
            container_env_from_cm_cs([ConfigSecretMap(name="x", type="volume")], [])

    def test_invalid_file_permission(self):
        """Test that file permissions must be octal."""
        with pytest.raises(ConfigMapSecretParseError):
            extract_volumes([ConfigSecretMap(name="x", type="volume", file_permission="rwx")], [])
