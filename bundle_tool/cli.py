"""CLI entry point for bundle-tool."""

from __future__ import annotations

import json
import logging
import sys

import click

from bundle_tool.bundle.analyzer import ImageReference
from bundle_tool.bundle.csv import BundleError
from bundle_tool.bundle.related_images import generate_related_images
from bundle_tool.config import MirrorPolicyConfig, MirrorPolicyLoader, ProvenanceLimits
from bundle_tool.provenance.errors import ProvenanceError
from bundle_tool.provenance.parser import ProvenanceParser
from bundle_tool.resolver.policy import MirrorPolicyError
from bundle_tool.resolver.resolver import ImageResolver
from bundle_tool.snapshot.generator import SnapshotError
from bundle_tool.snapshot.handler import SnapshotRequest, create_snapshot

logger = logging.getLogger(__name__)

_mirror_policy_option = click.option(
    "-m",
    "--mirror-policy",
    "mirror_policy",
    type=click.Path(exists=True, dir_okay=False),
    help="ImageContentSourcePolicy or ImageDigestMirrorSet YAML file.",
)


def _load_resolver(mirror_policy: str | None) -> ImageResolver:
    resolver = ImageResolver()
    loader = MirrorPolicyLoader(MirrorPolicyConfig(mirror_policy))
    try:
        loader.load_into(resolver)
    except MirrorPolicyError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Using {loader.description}", err=True)
    return resolver


@click.group()
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=False,
    help="Enable verbose (DEBUG) logging.",
)
def main(verbose: bool) -> None:
    """bundle-tool: mirror resolution and provenance for OLM bundles."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.argument("images", nargs=-1, required=True)
@click.option(
    "-m",
    "--mirror-policy",
    "mirror_policy",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="ImageContentSourcePolicy or ImageDigestMirrorSet YAML file.",
)
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON.")
def resolve(images: tuple[str, ...], mirror_policy: str, as_json: bool) -> None:
    """Resolve IMAGES through a mirror policy."""
    resolver = _load_resolver(mirror_policy)
    refs = [ImageReference(image=image) for image in images]
    resolved = resolver.resolve(refs)

    if as_json:
        payload = {
            "images": [
                {"original": before.image, "resolved": after.image}
                for before, after in zip(refs, resolved)
            ],
            "summary": resolver.mapping_summary(),
        }
        click.echo(json.dumps(payload, indent=2))
        return

    for before, after in zip(refs, resolved):
        click.echo(f"{before.image} -> {after.image}")
    summary = resolver.mapping_summary()
    click.echo(
        f"ICSP policies: {summary['icsp_policies_count']} "
        f"({summary['total_icsp_mirrors']} mirrors), "
        f"IDMS policies: {summary['idms_policies_count']} "
        f"({summary['total_idms_mirrors']} mirrors)",
        err=True,
    )


@main.command()
@click.argument("images", nargs=-1, required=True)
@click.option("--max-attestations", type=int, help="Attestations examined per image (1-1000).")
@click.option("--max-payload-size", type=int, help="Maximum attestation payload size in bytes.")
@click.option("--timeout", "processing_timeout", type=float, help="Seconds allowed per image.")
@click.option("--workers", type=int, default=1, show_default=True, help="Images parsed in parallel.")
@click.option(
    "--pretty/--no-pretty",
    default=True,
    help="Pretty-print the JSON output (default: on).",
)
def provenance(
    images: tuple[str, ...],
    max_attestations: int | None,
    max_payload_size: int | None,
    processing_timeout: float | None,
    workers: int,
    pretty: bool,
) -> None:
    """Parse the SLSA provenance of IMAGES and print it as JSON."""
    try:
        limits = ProvenanceLimits.from_env().replace(
            max_attestations=max_attestations,
            max_payload_size=max_payload_size,
            processing_timeout=processing_timeout,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    parser = ProvenanceParser(limits=limits)
    refs = [ImageReference(image=image) for image in images]
    try:
        results = parser.parse_all(refs, max_workers=workers)
    except ProvenanceError as exc:
        raise click.ClickException(str(exc)) from exc

    indent = 2 if pretty else None
    click.echo(json.dumps([info.to_dict() for info in results], indent=indent))

    summary = parser.parsing_summary(results)
    click.echo(
        f"Verified {summary['verified_images']}/{summary['total_images']} images "
        f"({summary['verification_rate']:.1f}%), "
        f"{summary['images_with_source']} with source, "
        f"{len(refs) - len(results)} skipped",
        err=True,
    )


@main.command(name="generate-related-images")
@click.argument("target", type=click.Path(exists=True))
@_mirror_policy_option
@click.option("--dry-run", is_flag=True, help="Show the changes without writing the CSV.")
def generate_related_images_command(
    target: str, mirror_policy: str | None, dry_run: bool
) -> None:
    """Rebuild spec.relatedImages of the CSV in TARGET (bundle directory or CSV file)."""
    resolver = _load_resolver(mirror_policy) if mirror_policy else None
    try:
        result = generate_related_images(target, resolver, dry_run=dry_run)
    except BundleError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Processed CSV: {result.csv_file}", err=True)
    for change in result.changes:
        click.echo(f"  {change.original} -> {change.updated}", err=True)
    if result.dry_run:
        click.echo("Dry run mode - no changes written to file", err=True)
    click.echo(result.summary)


@main.command()
@click.argument("bundle_image")
@click.option(
    "--bundle-dir",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Directory holding the unpacked bundle (with a manifests/ sub-directory).",
)
@_mirror_policy_option
@click.option("-o", "--output", "output_file", help="Snapshot file (default: <application>-snapshot.yaml).")
@click.option("--namespace", help="Namespace for the Snapshot (overrides provenance).")
@click.option("--application", "app_name", help="Application name when provenance has none.")
@click.option("--bundle-repo", help="Bundle source repository when provenance has none.")
@click.option("--bundle-commit", help="Bundle source revision paired with --bundle-repo.")
def snapshot(
    bundle_image: str,
    bundle_dir: str,
    mirror_policy: str | None,
    output_file: str | None,
    namespace: str | None,
    app_name: str | None,
    bundle_repo: str | None,
    bundle_commit: str | None,
) -> None:
    """Generate a Konflux Snapshot for BUNDLE_IMAGE."""
    request = SnapshotRequest(
        bundle_image=bundle_image,
        bundle_dir=bundle_dir,
        output_file=output_file,
        namespace=namespace,
        app_name=app_name,
        bundle_repo=bundle_repo,
        bundle_commit=bundle_commit,
        mirror_policy=MirrorPolicyConfig(mirror_policy),
    )
    try:
        parser = ProvenanceParser(limits=ProvenanceLimits.from_env())
        result = create_snapshot(request, parser=parser)
    except (ValueError, BundleError, MirrorPolicyError, ProvenanceError, SnapshotError) as exc:
        raise click.ClickException(str(exc)) from exc

    for original, resolved in zip(result.original_refs, result.resolved_refs):
        if original.image != resolved.image:
            click.echo(f"  {original.image} -> {resolved.image}", err=True)
    for info in result.provenance:
        status = "verified" if info.verified else f"unverified ({info.error})"
        click.echo(f"  {info.image_ref}: {status}", err=True)
    click.echo(f"Snapshot written to {result.snapshot_file}", err=True)
    click.echo(result.summary)


@main.command()
def version() -> None:
    """Print the installed bundle-tool version."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as package_version

    try:
        click.echo(package_version("bundle-tool"))
    except PackageNotFoundError:
        from bundle_tool import __version__

        click.echo(__version__)


if __name__ == "__main__":
    main()
