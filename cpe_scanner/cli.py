# cpe_scanner/cli.py
import json
import logging
import shutil
from dataclasses import replace
from pathlib import Path

import click

from .config import CONFIG_FILENAME, load_config
from .engine import Engine
from .exceptions import ScannerError
from .models import Dependency
from .updater import UpdateState

logger = logging.getLogger(__name__)

# CVSS v2 qualitative bands
SEVERITY_ORDER = {"UNKNOWN": 0, "NONE": 1, "LOW": 2, "MEDIUM": 3, "HIGH": 4}


# --- Reporting ---

def _reportable(dependency: Dependency, threshold: str | None) -> list:
    minimum = SEVERITY_ORDER.get((threshold or "UNKNOWN").upper(), 0)
    vulns = [v for v in dependency.sorted_vulnerabilities() if SEVERITY_ORDER.get(v.severity, 0) >= minimum]
    vulns.sort(key=lambda v: (SEVERITY_ORDER.get(v.severity, 0), v.name), reverse=True)
    return vulns


def render_text_report(dependencies: list[Dependency], threshold: str | None = None) -> str:
    lines = ["--- Scan Report (Text) ---"]
    total = 0
    for dependency in dependencies:
        vulns = _reportable(dependency, threshold)
        identifiers = ", ".join(i.value for i in dependency.sorted_identifiers()) or "none"
        lines.append(f"  - File: {dependency.name}")
        lines.append(f"    CPE:      {identifiers}")
        for vuln in vulns:
            score = vuln.cvss_score if vuln.cvss_score is not None else "N/A"
            lines.append(f"    {vuln.name}  Severity: {vuln.severity} ({score})")
            lines.append(f"      Desc: {vuln.description}")
        if dependency.suppressed_vulnerabilities:
            lines.append(f"    ({len(dependency.suppressed_vulnerabilities)} suppressed)")
        lines.append("-" * 20)
        total += len(vulns)
    lines.append(f"Found {total} vulnerabilities in {len(dependencies)} files." if total else "No vulnerabilities found.")
    lines.append("--- End Report ---")
    return "\n".join(lines)


def render_json_report(dependencies: list[Dependency], threshold: str | None = None) -> str:
    output_data = []
    for dependency in dependencies:
        output_data.append({
            "fileName": dependency.name,
            "filePath": dependency.file_path,
            "sha1": dependency.sha1sum,
            "identifiers": [{"type": i.type, "value": i.value, "url": i.url,
                             "confidence": i.confidence.name if i.confidence else None}
                            for i in dependency.sorted_identifiers()],
            "vulnerabilities": [{"cveId": v.name, "severity": v.severity, "cvssScore": v.cvss_score,
                                 "cvssVector": v.cvss_vector, "cwe": v.cwe, "matchedCpe": v.matched_cpe,
                                 "description": v.description}
                                for v in _reportable(dependency, threshold)],
            "suppressedVulnerabilities": sorted(v.name for v in dependency.suppressed_vulnerabilities),
        })
    return json.dumps(output_data, indent=2)


def _emit(report: str, output_file: str | None):
    if output_file:
        Path(output_file).parent.mkdir(parents=True, exist_ok=True)
        Path(output_file).write_text(report + "\n", encoding="utf-8")
        click.secho(f"Report written to {output_file}", fg="green")
    else:
        click.echo(report)


# --- CLI Definition ---

@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=CONFIG_FILENAME,
              show_default=True, help="Path to the YAML configuration file.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, config_path, verbose):
    """
    cpe-scanner: identifies third-party components by CPE and reports the
    known vulnerabilities (CVEs) recorded against them in the NVD.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    try:
        ctx.obj = load_config(config_path)
    except ScannerError as e:
        raise click.ClickException(str(e)) from e


@cli.command("update")
@click.pass_obj
def update_cmd(settings):
    """Fetches/updates the local NVD CVE data and rebuilds the CPE index."""
    try:
        with Engine(settings) as engine:
            state = engine.update()
    except ScannerError as e:
        raise click.ClickException(f"Update failed: {e}") from e
    if state == UpdateState.FAILED:
        click.secho("Unable to download the NVD CVE data; existing data was kept.", fg="yellow")
    elif state == UpdateState.NOTHING_TO_DO:
        click.secho("Vulnerability data is already up to date.", fg="green")
    else:
        click.secho("Vulnerability data updated.", fg="green")


@cli.command("scan")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, resolve_path=True))
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False),
              default='text', show_default=True, help="Output format.")
@click.option("--output-file", type=click.Path(dir_okay=False), help="Path to save the report output.")
@click.option("--severity-threshold", type=click.Choice(['HIGH', 'MEDIUM', 'LOW', 'NONE', 'UNKNOWN'],
                                                        case_sensitive=False), help="Minimum severity to report.")
@click.option("--ignore", type=str, help="Comma-separated vulnerability IDs to ignore.")
@click.option("--no-update", is_flag=True, help="Skip the automatic data update before scanning.")
@click.pass_obj
def scan_cmd(settings, paths, output_format, output_file, severity_threshold, ignore, no_update):
    """Scans files (or directories of files) for components with known vulnerabilities."""
    if ignore:
        ignored = [v.strip() for v in ignore.split(",") if v.strip()]
        settings = replace(settings, suppress_cves=list(settings.suppress_cves) + ignored)
    try:
        with Engine(settings) as engine:
            dependencies = engine.scan(paths, auto_update=False if no_update else None)
    except ScannerError as e:
        raise click.ClickException(f"Scan failed: {e}") from e
    if output_format.lower() == "json":
        _emit(render_json_report(dependencies, severity_threshold), output_file)
    else:
        _emit(render_text_report(dependencies, severity_threshold), output_file)


@cli.command("identify")
@click.option("--vendor", required=True, help="Vendor name, e.g. 'apache'.")
@click.option("--product", required=True, help="Product name, e.g. 'struts'.")
@click.option("--version", "version", default=None, help="Version, e.g. '2.1.2'.")
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False),
              default='text', show_default=True, help="Output format.")
@click.pass_obj
def identify_cmd(settings, vendor, product, version, output_format):
    """Identifies a single component from explicit vendor/product/version evidence."""
    try:
        with Engine(settings) as engine:
            dependency = engine.identify(vendor, product, version)
    except ScannerError as e:
        raise click.ClickException(f"Identification failed: {e}") from e
    if output_format.lower() == "json":
        click.echo(render_json_report([dependency]))
    else:
        click.echo(render_text_report([dependency]))


@cli.command("purge")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def purge_cmd(settings, yes):
    """Deletes the local data directory (vulnerability store and CPE index)."""
    data_dir = Path(settings.data_directory)
    if not data_dir.exists():
        click.echo(f"Nothing to purge; '{data_dir}' does not exist.")
        return
    if not yes:
        click.confirm(f"Delete '{data_dir}' and everything in it?", abort=True)
    try:
        shutil.rmtree(data_dir)
    except OSError as e:
        raise click.ClickException(f"Unable to delete '{data_dir}': {e}") from e
    click.secho(f"Purged {data_dir}", fg="green")


if __name__ == "__main__":
    cli()
