"""Tests for the CLI."""

import base64
import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from bundle_tool.bundle.analyzer import ImageReference
from bundle_tool.cli import main
from bundle_tool.provenance.fetcher import AttestationPayload
from bundle_tool.provenance.parser import ProvenanceInfo, ProvenanceParser
from bundle_tool.snapshot.generator import SnapshotError
from bundle_tool.snapshot.handler import SnapshotResult

IDMS = """\
apiVersion: config.openshift.io/v1
kind: ImageDigestMirrorSet
metadata:
  name: example
spec:
  imageDigestMirrors:
    - source: quay.io/example
      mirrors:
        - mirror.example.com/example
"""

CSV = """\
apiVersion: operators.coreos.com/v1alpha1
kind: ClusterServiceVersion
metadata:
  name: my-operator.v1.0.0
spec:
  install:
    spec:
      deployments:
        - name: controller
          spec:
            template:
              spec:
                containers:
                  - name: manager
                    image: quay.io/example/operator:v1.0.0
"""

STATEMENT = {
    "predicateType": "https://slsa.dev/provenance/v1",
    "predicate": {
        "buildDefinition": {
            "resolvedDependencies": [
                {"uri": "git+https://github.com/example/operator.git", "digest": {"sha1": "abc"}}
            ]
        }
    },
}


class FakeFetcher:
    def fetch(self, image_ref, *, timeout):
        if "unsigned" in image_ref:
            return []
        return [AttestationPayload(payload=base64.b64encode(json.dumps(STATEMENT).encode()).decode())]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def policy_file(tmp_path):
    path = tmp_path / "idms.yaml"
    path.write_text(IDMS)
    return path


@pytest.fixture
def bundle_dir(tmp_path):
    manifests = tmp_path / "bundle" / "manifests"
    manifests.mkdir(parents=True)
    (manifests / "csv.yaml").write_text(CSV)
    return tmp_path / "bundle"


class TestCliBasics:
    def test_help(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("resolve", "provenance", "generate-related-images", "snapshot", "version"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["version"])
        assert result.exit_code == 0
        assert result.stdout.strip() == "0.1.0"


class TestResolveCommand:
    def test_text_output(self, runner, policy_file):
        result = runner.invoke(
            main,
            ["resolve", "quay.io/example/operator:v1", "docker.io/library/nginx", "-m", str(policy_file)],
        )
        assert result.exit_code == 0, result.output
        assert result.stdout.splitlines() == [
            "quay.io/example/operator:v1 -> mirror.example.com/example/operator:v1",
            "docker.io/library/nginx -> docker.io/library/nginx",
        ]
        assert "IDMS policies: 1" in result.stderr

    def test_json_output(self, runner, policy_file):
        result = runner.invoke(
            main, ["resolve", "quay.io/example/operator:v1", "-m", str(policy_file), "--json"]
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["images"] == [
            {
                "original": "quay.io/example/operator:v1",
                "resolved": "mirror.example.com/example/operator:v1",
            }
        ]
        assert data["summary"]["idms_policies_count"] == 1

    def test_policy_is_required(self, runner):
        result = runner.invoke(main, ["resolve", "quay.io/example/operator:v1"])
        assert result.exit_code == 2

    def test_invalid_policy(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("kind: Deployment\nspec: {}\n")
        result = runner.invoke(main, ["resolve", "quay.io/a/b", "-m", str(path)])
        assert result.exit_code == 1
        assert "unsupported mirror policy kind" in result.output


class TestProvenanceCommand:
    @pytest.fixture
    def parsers(self):
        created = []

        def build(limits):
            parser = ProvenanceParser(fetcher=FakeFetcher(), limits=limits)
            created.append(parser)
            return parser

        with patch("bundle_tool.cli.ProvenanceParser", side_effect=build):
            yield created

    def test_json_results(self, runner, parsers):
        result = runner.invoke(
            main, ["provenance", "quay.io/example/operator:v1", "quay.io/example/unsigned:v1"]
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data[0]["verified"] is True
        assert data[0]["source_repo"] == "git+https://github.com/example/operator.git"
        assert data[1] == {
            "image_ref": "quay.io/example/unsigned:v1",
            "source_repo": "",
            "source_commit": "",
            "build_platform": "",
            "component_name": "",
            "application_name": "",
            "namespace": "",
            "verified": False,
            "error": "no provenance attestations found",
            "metadata": {},
        }
        assert "Verified 1/2 images (50.0%)" in result.stderr

    def test_limits_from_options_and_env(self, runner, parsers):
        result = runner.invoke(
            main,
            ["provenance", "quay.io/example/operator:v1", "--max-attestations", "5", "--no-pretty"],
            env={"BUNDLE_TOOL_PROCESSING_TIMEOUT": "12"},
        )
        assert result.exit_code == 0, result.output
        limits = parsers[0].limits
        assert limits.max_attestations == 5
        assert limits.processing_timeout == 12.0
        assert len(result.stdout.strip().splitlines()) == 1

    def test_invalid_limit(self, runner, parsers):
        result = runner.invoke(main, ["provenance", "quay.io/a/b", "--max-attestations", "0"])
        assert result.exit_code == 1
        assert "max_attestations" in result.output

    def test_invalid_references_are_skipped(self, runner, parsers):
        result = runner.invoke(main, ["provenance", "quay.io/example/operator:v1", "a" * 1100])
        assert result.exit_code == 0, result.output
        assert len(json.loads(result.stdout)) == 1
        assert "1 skipped" in result.stderr


class TestGenerateRelatedImagesCommand:
    def test_dry_run(self, runner, bundle_dir, policy_file):
        csv_path = bundle_dir / "manifests" / "csv.yaml"
        result = runner.invoke(
            main,
            ["generate-related-images", str(bundle_dir), "-m", str(policy_file), "--dry-run"],
        )
        assert result.exit_code == 0, result.output
        assert result.stdout.strip() == (
            "CSV would be updated with 1 images, 1 mirror policy changes applied"
        )
        assert "mirror.example.com/example/operator:v1.0.0" in result.stderr
        assert csv_path.read_text() == CSV

    def test_writes_csv(self, runner, bundle_dir):
        result = runner.invoke(main, ["generate-related-images", str(bundle_dir)])
        assert result.exit_code == 0, result.output
        written = yaml.safe_load((bundle_dir / "manifests" / "csv.yaml").read_text())
        assert written["spec"]["relatedImages"] == [
            {"name": "manager", "image": "quay.io/example/operator:v1.0.0"}
        ]

    def test_missing_manifests(self, runner, tmp_path):
        result = runner.invoke(main, ["generate-related-images", str(tmp_path)])
        assert result.exit_code == 1
        assert "manifests directory not found" in result.output


class TestSnapshotCommand:
    def test_passes_options_through(self, runner, bundle_dir, policy_file, tmp_path):
        output = tmp_path / "snap.yaml"
        refs = [ImageReference(image="quay.io/example/operator:v1.0.0")]
        resolved = [ImageReference(image="mirror.example.com/example/operator:v1.0.0")]
        fake_result = SnapshotResult(
            snapshot_file=str(output),
            application="my-app",
            namespace="team-ns",
            components_count=2,
            original_refs=refs,
            resolved_refs=resolved,
            provenance=[ProvenanceInfo(image_ref=resolved[0].image, verified=True)],
        )
        with patch("bundle_tool.cli.create_snapshot", return_value=fake_result) as create:
            result = runner.invoke(
                main,
                [
                    "snapshot",
                    "quay.io/example/operator-bundle:v1",
                    "--bundle-dir",
                    str(bundle_dir),
                    "-m",
                    str(policy_file),
                    "-o",
                    str(output),
                    "--namespace",
                    "team-ns",
                    "--application",
                    "my-app",
                ],
            )

        assert result.exit_code == 0, result.output
        request = create.call_args.args[0]
        assert request.bundle_image == "quay.io/example/operator-bundle:v1"
        assert request.output_file == str(output)
        assert request.namespace == "team-ns"
        assert request.app_name == "my-app"
        assert request.mirror_policy.mirror_policy_file == str(policy_file)
        assert result.stdout.strip() == "Application: my-app, Namespace: team-ns, Components: 2"
        assert "-> mirror.example.com/example/operator:v1.0.0" in result.stderr

    def test_error(self, runner, bundle_dir):
        with patch(
            "bundle_tool.cli.create_snapshot",
            side_effect=SnapshotError("application name not found in provenance and no fallback provided"),
        ):
            result = runner.invoke(
                main, ["snapshot", "quay.io/example/bundle:v1", "--bundle-dir", str(bundle_dir)]
            )
        assert result.exit_code == 1
        assert "application name not found" in result.output

    def test_bundle_dir_is_required(self, runner):
        result = runner.invoke(main, ["snapshot", "quay.io/example/bundle:v1"])
        assert result.exit_code == 2
