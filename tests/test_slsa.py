"""Tests for SLSA classification and extraction."""

import json

import pytest

from bundle_tool.provenance.errors import AttestationFormatError, NotSLSAProvenanceError
from bundle_tool.provenance.slsa import (
    SLSAAttestation,
    SLSAVersion,
    classify,
    extract,
    load_statements,
)

COMPONENT = "appstudio.openshift.io/component"
APPLICATION = "appstudio.openshift.io/application"
NAMESPACE = "appstudio.openshift.io/namespace"


def v1_statement(**predicate_overrides):
    predicate = {
        "buildDefinition": {
            "externalParameters": {
                "git-url": "https://github.com/example/operator",
                "runSpec": {"pipelineSpec": {}},
                "retries": 3,
            },
            "resolvedDependencies": [
                {"uri": "oci://quay.io/konflux/task", "digest": {"sha256": "abc"}},
                {
                    "uri": "git+https://github.com/example/operator.git",
                    "digest": {"sha1": "abc123def456"},
                },
            ],
        },
        "invocation": {"environment": {"labels": {COMPONENT: "my-operator-bundle"}}},
        "runDetails": {"builder": {"id": "https://tekton.dev/chains/v2"}},
    }
    predicate.update(predicate_overrides)
    return {
        "_type": "https://in-toto.io/Statement/v1",
        "predicateType": "https://slsa.dev/provenance/v1",
        "predicate": predicate,
    }


def v01_statement(**predicate_overrides):
    predicate = {
        "builder": {"id": "https://tekton.dev/chains/v2"},
        "materials": [
            {"uri": "oci://quay.io/konflux/task", "digest": {"sha256": "abc"}},
            {"uri": "git+https://gitlab.com/example/op.git", "digest": {"sha1": "deadbeef"}},
        ],
        "recipe": {
            "type": "https://tekton.dev/v1/PipelineRun",
            "environment": {APPLICATION: "env-app", "region": "us-east-1", "nested": {"a": 1}},
            "arguments": {COMPONENT: "arg-component", NAMESPACE: "arg-ns", "count": 2},
        },
        "invocation": {"environment": {"labels": {COMPONENT: "label-component"}}},
    }
    predicate.update(predicate_overrides)
    return {"predicateType": "https://slsa.dev/provenance/v0.2", "predicate": predicate}


class TestClassify:
    @pytest.mark.parametrize(
        "predicate_type",
        [
            "https://slsa.dev/provenance/v0.1",
            "https://slsa.dev/provenance/v0.2",
            "https://slsa.dev/provenance/v1",
            "slsaprovenance",
        ],
    )
    def test_allowed_predicate_types(self, predicate_type):
        attestation = SLSAAttestation(predicate_type=predicate_type)
        assert classify(attestation) is SLSAVersion.V0_1

    def test_other_predicate_type(self):
        attestation = SLSAAttestation(predicate_type="https://cyclonedx.org/bom")
        with pytest.raises(NotSLSAProvenanceError, match="cyclonedx"):
            classify(attestation)

    def test_v1_by_resolved_dependencies(self):
        assert classify(SLSAAttestation.from_statement(v1_statement())) is SLSAVersion.V1_0

    def test_v1_by_external_parameters_only(self):
        statement = v1_statement(buildDefinition={"externalParameters": {"a": "b"}})
        assert classify(SLSAAttestation.from_statement(statement)) is SLSAVersion.V1_0

    def test_empty_build_definition_is_v01(self):
        statement = v1_statement(buildDefinition={"resolvedDependencies": [], "externalParameters": {}})
        assert classify(SLSAAttestation.from_statement(statement)) is SLSAVersion.V0_1


class TestExtractV1:
    def test_scenario(self):
        result = extract(SLSAAttestation.from_statement(v1_statement()))
        assert result.version is SLSAVersion.V1_0
        assert result.source_repo == "git+https://github.com/example/operator.git"
        assert result.source_commit == "abc123def456"
        assert result.component_name == "my-operator-bundle"
        assert result.application_name == ""
        assert result.build_platform == "https://tekton.dev/chains/v2"

    def test_metadata_only_keeps_strings(self):
        result = extract(SLSAAttestation.from_statement(v1_statement()))
        assert result.metadata == {"git-url": "https://github.com/example/operator"}

    def test_predicate_builder_wins_over_run_details(self):
        statement = v1_statement(builder={"id": "predicate-builder"})
        result = extract(SLSAAttestation.from_statement(statement))
        assert result.build_platform == "predicate-builder"

    def test_missing_sha1(self):
        statement = v1_statement(
            buildDefinition={
                "resolvedDependencies": [{"uri": "git+https://x/y.git", "digest": {"sha256": "z"}}]
            }
        )
        result = extract(SLSAAttestation.from_statement(statement))
        assert result.source_repo == "git+https://x/y.git"
        assert result.source_commit == ""

    def test_v1_ignores_recipe(self):
        statement = v1_statement(recipe={"environment": {APPLICATION: "ignored"}})
        result = extract(SLSAAttestation.from_statement(statement))
        assert result.application_name == ""


class TestExtractV01:
    def test_git_material(self):
        result = extract(SLSAAttestation.from_statement(v01_statement()))
        assert result.version is SLSAVersion.V0_1
        assert result.source_repo == "git+https://gitlab.com/example/op.git"
        assert result.source_commit == "deadbeef"
        assert result.build_platform == "https://tekton.dev/chains/v2"

    def test_fields_fall_back_independently(self):
        result = extract(SLSAAttestation.from_statement(v01_statement()))
        assert result.component_name == "label-component"
        assert result.application_name == "env-app"
        assert result.namespace == "arg-ns"

    def test_environment_before_arguments(self):
        statement = v01_statement(
            invocation={},
            recipe={
                "environment": {COMPONENT: "from-env"},
                "arguments": {COMPONENT: "from-args"},
            },
        )
        result = extract(SLSAAttestation.from_statement(statement))
        assert result.component_name == "from-env"

    def test_non_string_label_values_are_skipped(self):
        statement = v01_statement(
            invocation={},
            recipe={"environment": {COMPONENT: 42}, "arguments": {COMPONENT: "from-args"}},
        )
        result = extract(SLSAAttestation.from_statement(statement))
        assert result.component_name == "from-args"

    def test_metadata_from_environment_and_arguments(self):
        result = extract(SLSAAttestation.from_statement(v01_statement()))
        assert result.metadata == {
            APPLICATION: "env-app",
            "region": "us-east-1",
            COMPONENT: "arg-component",
            NAMESPACE: "arg-ns",
        }

    def test_no_materials(self):
        result = extract(SLSAAttestation.from_statement(v01_statement(materials=None)))
        assert result.source_repo == ""


class TestFromStatement:
    def test_not_an_object(self):
        with pytest.raises(AttestationFormatError):
            SLSAAttestation.from_statement(["a"])

    def test_predicate_must_be_object(self):
        with pytest.raises(AttestationFormatError, match="predicate"):
            SLSAAttestation.from_statement({"predicateType": "slsaprovenance", "predicate": "x"})

    def test_materials_must_be_array(self):
        with pytest.raises(AttestationFormatError, match="materials"):
            SLSAAttestation.from_statement(v01_statement(materials={"uri": "x"}))

    def test_missing_predicate(self):
        attestation = SLSAAttestation.from_statement({"predicateType": "slsaprovenance"})
        assert attestation.materials == ()
        assert attestation.builder_id == ""


class TestLoadStatements:
    def test_single_document(self):
        assert load_statements(b'{"a": 1}') == [{"a": 1}]

    def test_array(self):
        assert load_statements(b'[{"a": 1}, {"b": 2}]') == [{"a": 1}, {"b": 2}]

    def test_newline_delimited(self):
        data = "\n".join([json.dumps({"a": 1}), "", "garbage", json.dumps({"b": 2})]).encode()
        assert load_statements(data) == [{"a": 1}, {"b": 2}]

    def test_not_json(self):
        with pytest.raises(AttestationFormatError):
            load_statements(b"not json")

    def test_not_utf8(self):
        with pytest.raises(AttestationFormatError):
            load_statements(b"\xff\xfe\x00")
