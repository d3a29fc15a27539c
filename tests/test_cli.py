"""Tests for the wpfleet command line interface."""
from __future__ import annotations

import io
import json
from pathlib import Path

import httpx
import pytest
from conftest import SAMPLE_COMPOSE, Fleet, add_site, running_containers
from typer.testing import CliRunner, Result

from wpfleet import __version__
from wpfleet.cli import RuntimeContext, app
from wpfleet.health import (
    HealthEngine,
    HealthStatus,
    HttpProbePayload,
    ProbeContext,
    ProbeDefinition,
    ProbeKind,
    ProbeOptions,
)
from wpfleet.logging import OPERATIONS_LOG_NAME
from wpfleet.ranges import HostTarget

runner = CliRunner()

COMPOSE_PATH = "/srv/wp/shop/docker-compose.yml"


class Decline:
    def __init__(self) -> None:
        self.prompts: list[str] = []

    def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return False


class Accept(Decline):
    def confirm(self, prompt: str) -> bool:
        super().confirm(prompt)
        return True


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _invoke(runtime: RuntimeContext, *args: str) -> Result:
    return runner.invoke(app, list(args), obj=runtime)


def _operations(runtime: RuntimeContext) -> list[dict[str, object]]:
    path = runtime.config.logs_dir / OPERATIONS_LOG_NAME
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _backups(fleet: Fleet, host: str = "wp1.example.com") -> list[str]:
    return sorted(name for name in fleet.host(host).files if ".backup." in name)


# Root and config ---------------------------------------------------------


def test_version_option_outputs_package_version(runtime: RuntimeContext) -> None:
    """CLI ``--version`` flag emits the package version."""
    result = _invoke(runtime, "--version")

    assert result.exit_code == 0
    assert __version__ in result.stdout
    assert _operations(runtime)[-1]["command"] == "root --version"


def test_invocation_without_subcommand_shows_help(runtime: RuntimeContext) -> None:
    result = _invoke(runtime)

    assert result.exit_code == 0
    assert "Manage a fleet of containerized WordPress sites" in result.stdout


def test_config_show_json(runtime: RuntimeContext) -> None:
    """`config show --json` emits the resolved configuration."""
    result = _invoke(runtime, "config", "show", "--json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["logs_dir"] == str(runtime.config.logs_dir)
    assert payload["fleet"]["concurrency"] == 10
    assert payload["mutation"]["settle_delay"] == 0.5


def test_config_show_renders_table(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "config", "show")

    assert result.exit_code == 0
    assert "logs_dir" in result.stdout
    assert "settle_delay" in result.stdout


def test_invalid_config_file_exits_with_validation_code(tmp_path: Path) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text("colour: blue\n")

    result = runner.invoke(app, ["--config-file", str(cfg), "config", "show"])

    assert result.exit_code == 2
    assert "Unknown configuration keys" in result.stdout


# Target selection ----------------------------------------------------------


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["wp1.example.com"], "Either --container or --all-containers is required."),
        (
            ["wp1.example.com", "--container", "wp_shop", "--all-containers"],
            "Cannot combine --container and --all-containers.",
        ),
        (["--container", "wp_shop"], "A hostname or --server-range is required."),
        (["--server-range", "wp.example.com:1-3", "--container", "wp_shop"], "Invalid server range"),
    ],
)
def test_target_selection_errors(
    runtime: RuntimeContext, fleet: Fleet, args: list[str], message: str
) -> None:
    result = _invoke(runtime, "compose", "read", *args)

    assert result.exit_code == 2
    assert message in result.stdout
    assert fleet.settings == []
    record = _operations(runtime)[-1]
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 2


def test_ssh_options_override_configuration(runtime: RuntimeContext, fleet: Fleet) -> None:
    add_site(fleet.host("wp1.example.com"))

    result = _invoke(
        runtime,
        "compose", "read", "wp1.example.com", "--container", "wp_shop",
        "--user", "deploy", "--port", "2222", "--no-agent", "--timeout", "3",
    )

    assert result.exit_code == 0, result.stdout
    (settings,) = fleet.settings
    assert settings.user == "deploy"
    assert settings.port == 2222
    assert settings.use_agent is False
    assert settings.connect_timeout == 3


# Read-only compose commands -------------------------------------------------


def test_compose_read_prints_file(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)

    result = _invoke(runtime, "compose", "read", "wp1.example.com", "--container", "wp_shop")

    assert result.exit_code == 0, result.stdout
    assert "=== wp1.example.com/wp_shop" in result.stdout
    assert "image: wordpress:6.5-php8.2" in result.stdout
    assert connection.closed


def test_compose_read_json(runtime: RuntimeContext, fleet: Fleet) -> None:
    add_site(fleet.host("wp1.example.com"))

    result = _invoke(
        runtime, "compose", "read", "wp1.example.com", "--container", "wp_shop", "--json"
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    (entry,) = payload["results"]
    assert entry["ok"] is True
    assert entry["data"]["path"] == COMPOSE_PATH
    assert entry["data"]["content"] == SAMPLE_COMPOSE
    assert payload["interrupted"] is False


def test_compose_read_missing_file_is_site_error(runtime: RuntimeContext, fleet: Fleet) -> None:
    add_site(fleet.host("wp1.example.com"), compose=None)

    result = _invoke(runtime, "compose", "read", "wp1.example.com", "--container", "wp_shop")

    assert result.exit_code == 4
    assert "Failed to read" in result.stdout


def test_working_dir_parent_override(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection, working_dir="/srv/wp/shop", compose=None)
    connection.files["/var/opt/shop/docker-compose.yml"] = SAMPLE_COMPOSE

    result = _invoke(
        runtime,
        "compose", "read", "wp1.example.com", "--container", "wp_shop",
        "--working-dir-parent", "/var/opt", "--json",
    )

    assert result.exit_code == 0, result.stdout
    (entry,) = _extract_json(result.stdout)["results"]
    assert entry["data"]["path"] == "/var/opt/shop/docker-compose.yml"


def test_compose_get_scalar_and_mapping(runtime: RuntimeContext, fleet: Fleet) -> None:
    add_site(fleet.host("wp1.example.com"))

    scalar = _invoke(
        runtime,
        "compose", "get", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "image",
    )
    mapping = _invoke(
        runtime,
        "compose", "get", "wp1.example.com", "--container", "wp_shop",
        "-s", "wordpress", "--config-key", "environment",
    )

    assert scalar.exit_code == 0, scalar.stdout
    assert "services.wordpress.image" in scalar.stdout
    assert "wordpress:6.5-php8.2" in scalar.stdout
    assert mapping.exit_code == 0, mapping.stdout
    assert "WORDPRESS_DB_HOST: db" in mapping.stdout


def test_compose_get_missing_key_is_validation_error(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    add_site(fleet.host("wp1.example.com"))

    result = _invoke(
        runtime,
        "compose", "get", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "healthcheck", "--json",
    )

    assert result.exit_code == 2
    (entry,) = _extract_json(result.stdout)["results"]
    assert entry["ok"] is False
    assert "healthcheck" in entry["error"]


def test_compose_export_prints_and_writes_placeholders(
    runtime: RuntimeContext, fleet: Fleet, tmp_path: Path
) -> None:
    add_site(fleet.host("wp1.example.com"))
    out_file = tmp_path / "shop.env"

    result = _invoke(
        runtime,
        "compose", "export", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--keys", "image,ports", "--out-file", str(out_file),
    )

    assert result.exit_code == 0, result.stdout
    assert "WORDPRESS_IMAGE=\nwordpress:6.5-php8.2\n---" in result.stdout
    assert "Wrote placeholders to" in result.stdout
    assert out_file.read_text(encoding="utf-8") == (
        "WORDPRESS_IMAGE=wordpress:6.5-php8.2\nWORDPRESS_PORTS=- 8080:80\n"
    )
    assert fleet.host("wp1.example.com").files[COMPOSE_PATH] == SAMPLE_COMPOSE
    assert _operations(runtime)[-1]["result"]["changed"] == 0


def test_compose_export_remote_append_json(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)

    result = _invoke(
        runtime,
        "compose", "export", "wp1.example.com", "--container", "wp_shop",
        "--service", "db", "--keys", "image", "--placeholder-prefix", "shop-db",
        "--remote-append", "--json",
    )

    assert result.exit_code == 0, result.stdout
    (entry,) = _extract_json(result.stdout)["results"]
    assert entry["data"]["placeholders"] == {"SHOP_DB_IMAGE": "mariadb:11"}
    assert entry["data"]["appended_to"] == COMPOSE_PATH
    assert connection.files[COMPOSE_PATH].endswith(
        "placeholders:\n  SHOP_DB_IMAGE: '%%SHOP_DB_IMAGE%%'\n"
    )
    assert _operations(runtime)[-1]["result"]["changed"] == 1


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["--keys", " , "], "--keys must name at least one service key."),
        (["--keys", "image", "--remote-file", "/tmp/p.yml"], "--remote-file requires --remote-append."),
        (
            ["--keys", "image", "--all-containers", "--out-file", "shop.env"],
            "--out-file needs a single host and --container.",
        ),
    ],
)
def test_compose_export_rejects_bad_options(
    runtime: RuntimeContext, fleet: Fleet, args: list[str], message: str
) -> None:
    result = _invoke(
        runtime, "compose", "export", "wp1.example.com", "--service", "wordpress", *args
    )

    assert result.exit_code == 2
    assert message in result.stdout
    assert fleet.settings == []


def test_compose_export_missing_key_is_validation_error(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    add_site(fleet.host("wp1.example.com"))

    result = _invoke(
        runtime,
        "compose", "export", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--keys", "image,healthcheck",
    )

    assert result.exit_code == 2
    assert "healthcheck" in result.stdout


def test_compose_list_services(runtime: RuntimeContext, fleet: Fleet) -> None:
    add_site(fleet.host("wp1.example.com"))

    result = _invoke(
        runtime, "compose", "list", "wp1.example.com", "--container", "wp_shop", "--json"
    )

    assert result.exit_code == 0, result.stdout
    (entry,) = _extract_json(result.stdout)["results"]
    services = entry["data"]["services"]
    assert list(services) == ["wordpress", "db"]
    assert services["wordpress"]["image"] == "wordpress:6.5-php8.2"
    assert services["wordpress"]["ports"] == ["8080:80"]
    assert services["db"]["container_name"] is None


def test_compose_backup_and_backups(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    connection.files[f"{COMPOSE_PATH}.backup.20250101-000000"] = "old"

    backup = _invoke(runtime, "compose", "backup", "wp1.example.com", "--container", "wp_shop")
    listing = _invoke(
        runtime, "compose", "backups", "wp1.example.com", "--container", "wp_shop", "--json"
    )

    assert backup.exit_code == 0, backup.stdout
    assert "backup created at" in backup.stdout
    created = [name for name in _backups(fleet) if not name.endswith("20250101-000000")]
    assert len(created) == 1
    assert connection.files[created[0]] == SAMPLE_COMPOSE

    assert listing.exit_code == 0, listing.stdout
    (entry,) = _extract_json(listing.stdout)["results"]
    paths = [item["path"] for item in entry["data"]["backups"]]
    assert paths == [f"{COMPOSE_PATH}.backup.20250101-000000", created[0]]


# Fan-out -------------------------------------------------------------------


def test_all_containers_discovers_sites(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    running_containers(connection, "wp_shop", "wp_blog", "mysql_shared")
    add_site(connection, "wp_shop", "/srv/wp/shop")
    add_site(connection, "wp_blog", "/srv/wp/blog")

    result = _invoke(runtime, "compose", "read", "wp1.example.com", "--all-containers", "--json")

    assert result.exit_code == 0, result.stdout
    results = _extract_json(result.stdout)["results"]
    assert [(entry["host"], entry["container"]) for entry in results] == [
        ("wp1.example.com", "wp_blog"),
        ("wp1.example.com", "wp_shop"),
    ]


def test_all_containers_without_matches_is_skipped(runtime: RuntimeContext, fleet: Fleet) -> None:
    running_containers(fleet.host("wp1.example.com"), "mysql_shared")

    result = _invoke(runtime, "compose", "read", "wp1.example.com", "--all-containers")

    assert result.exit_code == 0
    assert "skipped (no containers matching 'wp_')" in result.stdout
    assert _operations(runtime)[-1]["result"]["status"] == "warning"


def test_server_range_isolates_unreachable_hosts(runtime: RuntimeContext, fleet: Fleet) -> None:
    for name in ("wp1.example.com", "wp3.example.com"):
        add_site(fleet.host(name))

    result = _invoke(
        runtime,
        "compose", "read", "--server-range", "wp%d.example.com:1-3",
        "--container", "wp_shop", "--json",
    )

    assert result.exit_code == 3
    results = _extract_json(result.stdout)["results"]
    assert [entry["host"] for entry in results] == [
        "wp1.example.com",
        "wp2.example.com",
        "wp3.example.com",
    ]
    assert [entry["ok"] for entry in results] == [True, False, True]
    assert "unreachable" in results[1]["error"]


# Mutations -----------------------------------------------------------------


def test_compose_set_commits_when_healthy(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "image",
        "--value", "wordpress:6.6-php8.3", "--json",
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["change"] == "set services.wordpress.image = 'wordpress:6.6-php8.3'"
    (outcome,) = payload["outcomes"]
    assert outcome["outcome"] == "committed"
    assert outcome["health"] == "healthy"
    assert payload["summary"]["committed"] == 1
    assert "wordpress:6.6-php8.3" in connection.files[COMPOSE_PATH]
    assert len(_backups(fleet)) == 1
    assert connection.ran("docker compose down")
    assert connection.ran("docker compose up -d")
    assert fleet.sleeps == [0.5]
    (target, kinds, _options), = fleet.engine_calls
    assert target.container == "wp_shop"
    assert kinds == frozenset(
        {ProbeKind.HTTP, ProbeKind.TLS, ProbeKind.CONTAINER, ProbeKind.WORDPRESS}
    )
    record = _operations(runtime)[-1]
    assert record["command"] == "compose set"
    assert record["result"]["changed"] == 1
    step_names = [step["name"] for step in record["steps"]]
    assert "wp1.example.com/wp_shop.backup" in step_names
    assert "wp1.example.com/wp_shop.commit" in step_names


def test_compose_set_health_gate_probes_the_siteurl(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    connection.respond("option get siteurl", " wp_shop ", stdout="http://shop.example.org\n")
    urls: list[str] = []

    def http(context: ProbeContext) -> HttpProbePayload:
        urls.append(context.url)
        return HttpProbePayload(
            url=context.url,
            final_url=context.url,
            status_code=200,
            response_time_ms=12.0,
            content_length=2,
        )

    runtime.engine_factory = lambda options: HealthEngine(
        options,
        tls_inspector=object(),
        probe_definitions={ProbeKind.HTTP: ProbeDefinition(ProbeKind.HTTP, http)},
    )

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "restart", "--value", "always", "--json",
    )

    assert result.exit_code == 0, result.stdout
    assert urls == ["http://shop.example.org"]
    (outcome,) = _extract_json(result.stdout)["outcomes"]
    assert outcome["outcome"] == "committed"


def test_compose_set_text_summary(runtime: RuntimeContext, fleet: Fleet) -> None:
    add_site(fleet.host("wp1.example.com"))

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "restart", "--value", "always",
    )

    assert result.exit_code == 0, result.stdout
    assert "Summary: committed=1 rolled_back=0" in result.stdout


def test_compose_set_rolls_back_unhealthy_site(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    fleet.statuses["wp1.example.com"] = HealthStatus.UNHEALTHY

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "image",
        "--value", "wordpress:broken", "--json",
    )

    assert result.exit_code == 4
    (outcome,) = _extract_json(result.stdout)["outcomes"]
    assert outcome["outcome"] == "rolled_back"
    assert [step["name"] for step in outcome["steps"]][-2:] == [
        "rollback.restore",
        "rollback.restart",
    ]
    assert connection.files[COMPOSE_PATH] == SAMPLE_COMPOSE
    assert len(connection.ran("docker compose up -d")) == 2
    assert _operations(runtime)[-1]["result"]["rc"] == 4


def test_compose_set_rollback_failure_exits_five(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    connection.respond(
        "cd /srv/wp/shop ", "docker compose", exit_status=1, stderr="daemon not running"
    )
    connection.respond("cd /srv/wp/shop ", "docker compose", times=2)
    fleet.statuses["wp1.example.com"] = HealthStatus.UNHEALTHY

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop", "--yes",
        "--service", "wordpress", "--config-key", "image",
        "--value", "wordpress:broken", "--json",
    )

    assert result.exit_code == 5
    payload = _extract_json(result.stdout)
    (outcome,) = payload["outcomes"]
    assert outcome["outcome"] == "rollback_failed"
    assert outcome["backup"] is not None
    assert payload["summary"]["rollback_failed"] == 1
    record = _operations(runtime)[-1]
    assert record["result"]["rc"] == 5
    assert "rollback failed" in record["result"]["message"]


def test_compose_set_without_rollback_leaves_change(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    fleet.statuses["wp1.example.com"] = HealthStatus.UNHEALTHY

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop", "--no-rollback",
        "--service", "wordpress", "--config-key", "image",
        "--value", "wordpress:broken", "--json",
    )

    assert result.exit_code == 4
    (outcome,) = _extract_json(result.stdout)["outcomes"]
    assert outcome["outcome"] == "failed"
    assert "wordpress:broken" in connection.files[COMPOSE_PATH]


def test_compose_set_declined_changes_nothing(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    decline = Decline()
    runtime.confirmer = decline

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "image", "--value", "wordpress:6.6",
    )

    assert result.exit_code == 0
    assert "Cancelled." in result.stdout
    assert decline.prompts == [
        "Apply 'set services.wordpress.image = 'wordpress:6.6'' to "
        "wp1.example.com (container wp_shop)?"
    ]
    assert connection.files[COMPOSE_PATH] == SAMPLE_COMPOSE
    assert connection.commands == []
    assert _operations(runtime)[-1]["result"]["status"] == "warning"


def test_compose_set_asks_once_for_the_whole_batch(runtime: RuntimeContext, fleet: Fleet) -> None:
    for host in ("wp1.example.com", "wp2.example.com"):
        add_site(fleet.host(host))
    accept = Accept()
    runtime.confirmer = accept

    result = _invoke(
        runtime,
        "compose", "set", "--server-range", "wp%d.example.com:1-2", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "restart", "--value", "always", "--json",
    )

    assert result.exit_code == 0, result.stdout
    assert len(accept.prompts) == 1
    outcomes = _extract_json(result.stdout)["outcomes"]
    assert [outcome["outcome"] for outcome in outcomes] == ["committed", "committed"]
    assert all(outcome["steps"][0]["name"] == "confirm" for outcome in outcomes)


def test_compose_set_skip_flags(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--no-backup", "--no-restart",
        "--service", "wordpress", "--config-key", "restart", "--value", "always", "--json",
    )

    assert result.exit_code == 0, result.stdout
    (outcome,) = _extract_json(result.stdout)["outcomes"]
    assert outcome["outcome"] == "committed"
    assert outcome["backup"] is None
    assert _backups(fleet) == []
    assert connection.ran("docker compose") == []
    assert fleet.engine_calls == []


def test_compose_set_value_file_and_interactive(
    runtime: RuntimeContext, fleet: Fleet, tmp_path: Path
) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    value_file = tmp_path / "ports.yml"
    value_file.write_text("- 8081:80\n", encoding="utf-8")

    from_file = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "ports", "--value-file", str(value_file),
    )
    assert from_file.exit_code == 0, from_file.stdout
    assert "8081:80" in connection.files[COMPOSE_PATH]

    runtime.stdin = io.StringIO("memory: 512M\ncpus: '1.0'\n")
    interactive = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "mem_limits", "--interactive",
    )
    assert interactive.exit_code == 0, interactive.stdout
    assert "memory: 512M" in connection.files[COMPOSE_PATH]


def test_compose_set_requires_exactly_one_value_source(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "image",
    )

    assert result.exit_code == 2
    assert "Provide exactly one of --value" in result.stdout


def test_compose_set_unknown_service_is_validation_error(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)

    result = _invoke(
        runtime,
        "compose", "set", "wp1.example.com", "--container", "wp_shop",
        "--service", "redis", "--config-key", "image", "--value", "redis:7", "--json",
    )

    assert result.exit_code == 2
    (outcome,) = _extract_json(result.stdout)["outcomes"]
    assert outcome["outcome"] == "failed"
    assert connection.files[COMPOSE_PATH] == SAMPLE_COMPOSE


def test_health_url_rejected_for_server_range(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(
        runtime,
        "compose", "set", "--server-range", "wp%d.example.com:1-2", "--container", "wp_shop",
        "--health-url", "https://shop.example.com",
        "--service", "wordpress", "--config-key", "image", "--value", "wordpress:6.6",
    )

    assert result.exit_code == 2
    assert "--health-url applies to a single host" in result.stdout


def test_compose_set_across_range_isolates_failures(runtime: RuntimeContext, fleet: Fleet) -> None:
    for name in ("wp1.example.com", "wp2.example.com", "wp3.example.com"):
        add_site(fleet.host(name))
    fleet.statuses["wp2.example.com"] = HealthStatus.UNHEALTHY

    result = _invoke(
        runtime,
        "compose", "set", "--server-range", "wp%d.example.com:1-4", "--container", "wp_shop",
        "--concurrency", "2",
        "--service", "wordpress", "--config-key", "image",
        "--value", "wordpress:6.6-php8.3", "--json",
    )

    assert result.exit_code == 4
    payload = _extract_json(result.stdout)
    outcomes = {entry["host"]: entry["outcome"] for entry in payload["outcomes"]}
    assert outcomes == {
        "wp1.example.com": "committed",
        "wp2.example.com": "rolled_back",
        "wp3.example.com": "committed",
        "wp4.example.com": "failed",
    }
    assert "wordpress:6.6-php8.3" in fleet.host("wp3.example.com").files[COMPOSE_PATH]
    assert fleet.host("wp2.example.com").files[COMPOSE_PATH] == SAMPLE_COMPOSE


def test_compose_delete_key_and_section(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)

    key = _invoke(
        runtime,
        "compose", "delete", "wp1.example.com", "--container", "wp_shop",
        "--service", "wordpress", "--config-key", "ports",
    )
    section = _invoke(
        runtime,
        "compose", "delete", "wp1.example.com", "--container", "wp_shop", "--service", "db",
    )

    assert key.exit_code == 0, key.stdout
    assert section.exit_code == 0, section.stdout
    content = connection.files[COMPOSE_PATH]
    assert "8080:80" not in content
    assert "mariadb" not in content
    assert "wordpress:6.5-php8.2" in content


def test_compose_add_service(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)

    result = _invoke(
        runtime,
        "compose", "add", "wp1.example.com", "--container", "wp_shop",
        "--service", "redis", "--yaml", "{image: 'redis:7', restart: always}",
    )

    assert result.exit_code == 0, result.stdout
    assert "redis:7" in connection.files[COMPOSE_PATH]


def test_compose_add_requires_mapping(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(
        runtime,
        "compose", "add", "wp1.example.com", "--container", "wp_shop",
        "--service", "redis", "--yaml", "- not a mapping",
    )

    assert result.exit_code == 2
    assert "must be defined by a YAML mapping" in result.stdout


def test_compose_edit_replaces_document(
    runtime: RuntimeContext, fleet: Fleet, tmp_path: Path
) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection)
    replacement = tmp_path / "compose.yml"
    replacement.write_text("services:\n  web:\n    image: nginx:1.27\n", encoding="utf-8")

    result = _invoke(
        runtime,
        "compose", "edit", "wp1.example.com", "--container", "wp_shop",
        "--yaml-file", str(replacement), "--no-health-check",
    )

    assert result.exit_code == 0, result.stdout
    assert "nginx:1.27" in connection.files[COMPOSE_PATH]
    assert "mariadb" not in connection.files[COMPOSE_PATH]
    assert fleet.engine_calls == []
    assert len(_backups(fleet)) == 1


def test_compose_edit_rejects_invalid_yaml(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(
        runtime,
        "compose", "edit", "wp1.example.com", "--container", "wp_shop",
        "--yaml", "services: [unclosed",
    )

    assert result.exit_code == 2
    assert "Invalid compose document" in result.stdout


def test_compose_restore_latest(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    add_site(connection, compose="services: {}\n")
    connection.files[f"{COMPOSE_PATH}.backup.20250101-000000"] = "old\n"
    connection.files[f"{COMPOSE_PATH}.backup.20250201-000000"] = SAMPLE_COMPOSE

    result = _invoke(
        runtime,
        "compose", "restore", "wp1.example.com", "--container", "wp_shop", "--latest", "--json",
    )

    assert result.exit_code == 0, result.stdout
    (entry,) = _extract_json(result.stdout)["results"]
    assert entry["data"] == {
        "backup": f"{COMPOSE_PATH}.backup.20250201-000000",
        "restarted": True,
        "health": "healthy",
    }
    assert connection.files[COMPOSE_PATH] == SAMPLE_COMPOSE
    assert connection.ran("docker compose up -d")


def test_compose_restore_requires_one_source(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(runtime, "compose", "restore", "wp1.example.com", "--container", "wp_shop")

    assert result.exit_code == 2
    assert "Provide exactly one of --backup-path or --latest." in result.stdout


def test_compose_restore_without_backups_fails(runtime: RuntimeContext, fleet: Fleet) -> None:
    add_site(fleet.host("wp1.example.com"))

    result = _invoke(
        runtime,
        "compose", "restore", "wp1.example.com", "--container", "wp_shop",
        "--latest", "--no-restart",
    )

    assert result.exit_code == 4
    assert "No backups of" in result.stdout


# Health --------------------------------------------------------------------


def test_health_check_host_only_drops_container_probes(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    result = _invoke(runtime, "health", "check", "wp1.example.com", "--output", "json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    (verdict,) = payload["verdicts"]
    assert verdict["host"] == "wp1.example.com"
    assert verdict["status"] == "healthy"
    (target, kinds, _options), = fleet.engine_calls
    assert target.container is None
    assert kinds == frozenset({ProbeKind.HTTP, ProbeKind.TLS})
    assert fleet.settings == []


def test_health_check_exit_codes_follow_worst_status(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    fleet.statuses["wp2.example.com"] = HealthStatus.UNHEALTHY
    fleet.statuses["wp3.example.com"] = HealthStatus.DEGRADED

    result = _invoke(
        runtime, "health", "check", "--server-range", "wp%d.example.com:1-3", "-o", "json"
    )

    assert result.exit_code == 4
    verdicts = _extract_json(result.stdout)["verdicts"]
    assert [verdict["status"] for verdict in verdicts] == ["healthy", "unhealthy", "degraded"]
    record = _operations(runtime)[-1]
    assert record["result"]["errors"] == ["wp2.example.com"]


def test_health_check_unknown_exits_three(runtime: RuntimeContext, fleet: Fleet) -> None:
    fleet.statuses["wp1.example.com"] = HealthStatus.UNKNOWN

    result = _invoke(runtime, "health", "check", "wp1.example.com")

    assert result.exit_code == 3
    assert "UNKNOWN" in result.stdout


def test_health_check_with_containers_uses_ssh(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")
    running_containers(connection, "wp_shop", "wp_blog")

    result = _invoke(
        runtime,
        "health", "check", "wp1.example.com", "--all-containers",
        "--probes", "container,wordpress", "--metrics", "-o", "json",
    )

    assert result.exit_code == 0, result.stdout
    verdicts = _extract_json(result.stdout)["verdicts"]
    assert [verdict["container"] for verdict in verdicts] == ["wp_blog", "wp_shop"]
    assert {kinds for _target, kinds, _options in fleet.engine_calls} == {
        frozenset({ProbeKind.CONTAINER, ProbeKind.WORDPRESS, ProbeKind.METRICS})
    }
    assert connection.closed


def test_health_check_probes_each_container_at_its_siteurl(
    runtime: RuntimeContext, fleet: Fleet
) -> None:
    connection = fleet.host("wp1.example.com")
    running_containers(connection, "wp_shop", "wp_blog")
    connection.respond("option get siteurl", " wp_shop ", stdout="https://shop.example.org\n")
    connection.respond("option get siteurl", " wp_blog ", stdout="http://blog.example.org\n")
    seen: list[httpx.Request] = []

    def factory(options: ProbeOptions) -> HealthEngine:
        def record(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="ok")

        return HealthEngine(
            options,
            http_transport=httpx.MockTransport(record),
            resolver=lambda *args, **kwargs: [],
        )

    runtime.engine_factory = factory

    result = _invoke(
        runtime,
        "health", "check", "wp1.example.com", "--all-containers", "--probes", "http",
        "-o", "json",
    )

    assert result.exit_code == 0, result.stdout
    assert sorted(request.url.host for request in seen) == ["blog.example.org", "shop.example.org"]
    verdicts = _extract_json(result.stdout)["verdicts"]
    assert [verdict["status"] for verdict in verdicts] == ["healthy", "healthy"]
    assert connection.closed


def test_health_check_unreachable_host_is_unknown(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(
        runtime, "health", "check", "wp9.example.com", "--container", "wp_shop", "-o", "json"
    )

    assert result.exit_code == 3
    (verdict,) = _extract_json(result.stdout)["verdicts"]
    assert verdict["status"] == "unknown"
    assert "Health check aborted" in verdict["warnings"][0]


def test_health_check_prometheus_output(runtime: RuntimeContext, fleet: Fleet) -> None:
    fleet.statuses["wp2.example.com"] = HealthStatus.DEGRADED

    result = _invoke(
        runtime,
        "health", "check", "--server-range", "wp%d.example.com:1-2", "--output", "prometheus",
    )

    assert result.exit_code == 0, result.stdout
    assert 'wordpress_health_status{host="wp1.example.com",container=""} 1.0' in result.stdout
    assert 'host="wp2.example.com",container=""} 0.5' in result.stdout


def test_health_check_rejects_unknown_probe_and_format(runtime: RuntimeContext) -> None:
    probe = _invoke(runtime, "health", "check", "wp1.example.com", "--probes", "http,ping")
    output = _invoke(runtime, "health", "check", "wp1.example.com", "--output", "xml")

    assert probe.exit_code == 2
    assert "ping" in probe.stdout
    assert output.exit_code == 2
    assert "Unknown output format" in output.stdout


def test_health_probe_passes_request_options(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(
        runtime,
        "health", "probe", "https://shop.example.com/health",
        "-H", "Host: shop.internal", "--no-follow-redirects", "--insecure", "--json",
    )

    assert result.exit_code == 0, result.stdout
    (target, kinds, options), = fleet.engine_calls
    assert target.host == "shop.example.com"
    assert kinds == frozenset({ProbeKind.HTTP})
    assert options.url == "https://shop.example.com/health"
    assert options.headers == {"Host": "shop.internal"}
    assert options.follow_redirects is False
    assert options.verify_tls is False


def test_health_probe_rejects_bad_header(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "health", "probe", "https://shop.example.com", "-H", "novalue")

    assert result.exit_code == 2
    assert "Invalid header" in result.stdout


METRICS_TEXT = """\
# HELP wordpress_requests_total Requests served.
# TYPE wordpress_requests_total counter
wordpress_requests_total 120
# HELP wordpress_errors_total Errors raised.
# TYPE wordpress_errors_total counter
wordpress_errors_total 3
"""


def _metrics_engine(handler, seen: list[httpx.Request]):
    def factory(options: ProbeOptions) -> HealthEngine:
        def record(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        return HealthEngine(options, http_transport=httpx.MockTransport(record))

    return factory


def test_health_metrics_reports_summary(runtime: RuntimeContext) -> None:
    seen: list[httpx.Request] = []
    runtime.engine_factory = _metrics_engine(
        lambda request: httpx.Response(200, text=METRICS_TEXT), seen
    )

    result = _invoke(
        runtime, "health", "metrics", "shop.example.com", "--metrics-token", "s3cret", "--json"
    )

    assert result.exit_code == 0, result.stdout
    assert str(seen[0].url) == "https://shop.example.com/metrics"
    assert seen[0].headers["Authorization"] == "Bearer s3cret"
    payload = _extract_json(result.stdout)
    metrics = payload["probes"]["metrics"]["data"]
    assert metrics["available"] is True
    assert metrics["requests_total"] == 120
    assert _operations(runtime)[-1]["result"]["status"] == "success"


def test_health_metrics_unavailable_is_a_warning(runtime: RuntimeContext) -> None:
    seen: list[httpx.Request] = []
    runtime.engine_factory = _metrics_engine(lambda request: httpx.Response(404), seen)

    result = _invoke(runtime, "health", "metrics", "shop.example.com")

    assert result.exit_code == 0, result.stdout
    assert "Metrics unavailable" in result.stdout
    assert _operations(runtime)[-1]["result"]["status"] == "warning"


def test_health_dashboard_refreshes_until_iterations(runtime: RuntimeContext, fleet: Fleet) -> None:
    connection = fleet.host("wp1.example.com")

    result = _invoke(
        runtime,
        "health", "dashboard", "wp1.example.com", "--container", "wp_shop",
        "--docker-stats", "--metrics", "--iterations", "3", "--interval", "2",
    )

    assert result.exit_code == 0, result.stdout
    assert "HEALTHY" in result.stdout
    assert len(fleet.engine_calls) == 3
    target, kinds, _options = fleet.engine_calls[0]
    assert target == HostTarget(host="wp1.example.com", container="wp_shop")
    assert kinds == frozenset({ProbeKind.HTTP, ProbeKind.CONTAINER, ProbeKind.METRICS})
    assert fleet.sleeps == [2.0, 2.0]
    assert connection.closed
    record = _operations(runtime)[-1]["result"]
    assert record["status"] == "success"
    assert record["context"]["refreshes"] == 3


def test_health_dashboard_stops_on_ctrl_c(runtime: RuntimeContext, fleet: Fleet) -> None:
    def sleep(seconds: float) -> None:
        fleet.sleeps.append(seconds)
        if len(fleet.sleeps) == 2:
            raise KeyboardInterrupt

    runtime.sleep = sleep

    result = _invoke(runtime, "health", "dashboard", "shop.example.com")

    assert result.exit_code == 0, result.stdout
    assert len(fleet.engine_calls) == 2
    assert fleet.engine_calls[0][1] == frozenset({ProbeKind.HTTP})
    assert fleet.settings == []
    context = _operations(runtime)[-1]["result"]["context"]
    assert context["interrupted"] is True
    assert context["last_status"] == "healthy"


def test_health_dashboard_docker_stats_needs_container(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(runtime, "health", "dashboard", "shop.example.com", "--docker-stats")

    assert result.exit_code == 2
    assert "--docker-stats needs --container" in result.stdout
    assert fleet.engine_calls == []


def test_health_dashboard_unreachable_host(runtime: RuntimeContext, fleet: Fleet) -> None:
    result = _invoke(runtime, "health", "dashboard", "wp9.example.com", "--container", "wp_shop")

    assert result.exit_code == 3
    assert fleet.engine_calls == []
