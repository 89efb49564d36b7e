"""Tests for certificate installation and renewal."""

from pathlib import Path

import pytest
from structlog.testing import capture_logs

from server_provisioner.certificate import (
    CertificateInstaller,
    CertificateRenewer,
    ComposeProxy,
    merge_crontab,
)
from server_provisioner.exceptions import (
    CertificateError,
    ConfigurationError,
    DnsMismatchError,
    ValidationError,
)
from server_provisioner.types import CommandResult, DnsRecords, ServerAddresses
from server_provisioner.utils.prompt import Prompter

from conftest import NGINX_TEMPLATE, FakeValidator


SERVER = ServerAddresses(ipv4="203.0.113.10", ipv6=None)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "opt" / "shop"
    (path / "nginx").mkdir(parents=True)
    (path / "nginx" / "nginx.conf").write_text(NGINX_TEMPLATE)
    (path / "docker-compose.prod.yml").write_text("services: {}\n")
    (path / ".env.production").write_text("NEXT_PUBLIC_SITE_URL=http://localhost:3000\n")
    return path


@pytest.fixture
def cert_config(test_config, project_dir):
    cert = test_config.certificate
    cert.domain = "example.com"
    cert.project_dir = project_dir
    cert.project_user = "shop-user"
    cert.email = "admin@example.com"
    cert.include_www = True

    live = cert.letsencrypt_live_dir / "example.com"
    live.mkdir(parents=True)
    (live / "fullchain.pem").write_text("CERTIFICATE\n")
    (live / "privkey.pem").write_text("PRIVATE KEY\n")
    return test_config


def make_installer(config, executor, system, file_manager, records=None):
    executor.available.add("certbot")
    return CertificateInstaller(
        config,
        executor=executor,
        system=system,
        file_manager=file_manager,
        prompter=Prompter(interactive=False, assume_yes=True),
        validator=FakeValidator(Path("/home"), ["shop-user"]),
        resolver=lambda domain, nameserver: records or DnsRecords(ipv4=("203.0.113.10",)),
        address_fetcher=lambda ipv4_url, ipv6_url, timeout: SERVER,
    )


def test_merge_crontab_replaces_existing_entry():
    script = Path("/opt/renew-ssl-example.com.sh")
    existing = (
        "MAILTO=root\n"
        "0 3 * * * /opt/renew-ssl-example.com.sh >> /var/log/old.log 2>&1\n"
        "0 4 * * * /usr/local/bin/backup\n"
    )
    entry = "0 3 * * * /opt/renew-ssl-example.com.sh >> /var/log/ssl-renewal.log 2>&1"

    merged = merge_crontab(existing, script, entry)

    assert merged.count(str(script)) == 1
    assert "MAILTO=root" in merged
    assert "/usr/local/bin/backup" in merged
    assert merged.endswith(entry + "\n")
    assert merge_crontab(merged, script, entry) == merged


def test_full_run(cert_config, executor, system, file_manager, project_dir):
    make_installer(cert_config, executor, system, file_manager).run()

    certbot = next(cmd for cmd in executor.commands if cmd.startswith("certbot certonly"))
    assert "--standalone --non-interactive --agree-tos -m admin@example.com" in certbot
    assert certbot.endswith("-d example.com -d www.example.com")

    cert = project_dir / "ssl" / "cert.pem"
    key = project_dir / "ssl" / "key.pem"
    assert cert.read_text() == "CERTIFICATE\n"
    assert cert.stat().st_mode & 0o777 == 0o644
    assert key.stat().st_mode & 0o777 == 0o600
    assert executor.ran(f"chown -R shop-user:shop-user {project_dir / 'ssl'}")

    nginx_conf = (project_dir / "nginx" / "nginx.conf").read_text()
    assert "server_name example.com www.example.com;" in nginx_conf
    env = (project_dir / ".env.production").read_text()
    assert "NEXT_PUBLIC_SITE_URL=https://example.com" in env

    script = cert_config.certificate.renewal_script_dir / "renew-ssl-example.com.sh"
    assert "--domain example.com" in script.read_text()
    assert script.stat().st_mode & 0o777 == 0o755
    assert f"0 3 * * * {script}" in executor.inputs["crontab -"]

    stop = executor.commands.index(
        next(cmd for cmd in executor.commands if cmd.endswith("stop nginx"))
    )
    start = executor.commands.index(next(cmd for cmd in executor.commands if cmd.endswith("up -d")))
    assert stop < executor.commands.index(certbot) < start
    assert executor.commands[-1].endswith("up -d")


def test_certbot_failure_restarts_proxy(cert_config, executor, system, file_manager, project_dir):
    executor.results["certbot certonly"] = CommandResult(False, "", "Connection refused", 1)

    with pytest.raises(CertificateError):
        make_installer(cert_config, executor, system, file_manager).run()

    assert executor.commands[-1].endswith("up -d")
    assert not (project_dir / "ssl" / "cert.pem").exists()
    assert "yourdomain.com" in (project_dir / "nginx" / "nginx.conf").read_text()


def test_dns_mismatch_stops_before_certbot(cert_config, executor, system, file_manager):
    installer = make_installer(
        cert_config, executor, system, file_manager, records=DnsRecords(ipv4=("198.51.100.7",))
    )

    with pytest.raises(DnsMismatchError):
        installer.run()
    assert not executor.ran("certbot")
    assert not executor.ran("stop nginx")


def test_unknown_project_user(cert_config, executor, system, file_manager):
    cert_config.certificate.project_user = "nobody-here"
    with pytest.raises(ValidationError):
        make_installer(cert_config, executor, system, file_manager).collect_inputs()


def test_missing_project_dir(cert_config, executor, system, file_manager, tmp_path):
    cert_config.certificate.project_dir = tmp_path / "missing"
    with pytest.raises(ConfigurationError):
        make_installer(cert_config, executor, system, file_manager).collect_inputs()


def test_invalid_email(cert_config, executor, system, file_manager):
    cert_config.certificate.email = "admin@localhost"
    with pytest.raises(ValidationError):
        make_installer(cert_config, executor, system, file_manager).collect_inputs()


def test_www_defaults_to_no(cert_config, executor, system, file_manager):
    cert_config.certificate.include_www = None
    installer = make_installer(cert_config, executor, system, file_manager)
    installer.prompter = Prompter(interactive=False)
    installer.collect_inputs()
    assert installer.domains == ["example.com"]


def test_nginx_failure_is_advisory(cert_config, executor, system, file_manager, project_dir):
    (project_dir / "nginx" / "nginx.conf").unlink()
    make_installer(cert_config, executor, system, file_manager).run()
    assert (project_dir / "ssl" / "cert.pem").exists()


def test_env_failure_is_advisory(cert_config, executor, system, file_manager, project_dir):
    env_path = project_dir / ".env.production"
    env_path.unlink()
    installer = make_installer(cert_config, executor, system, file_manager)

    with capture_logs() as logs:
        assert installer.update_env_file() is False

    warning = next(entry for entry in logs if entry["log_level"] == "warning")
    assert warning["event"] == "Failed to update env file, update it manually"
    assert warning["path"] == str(env_path)


def test_proxy_falls_back_to_legacy_compose(executor, project_dir):
    executor.results["docker compose"] = CommandResult(False, "", "unknown command", 1)
    proxy = ComposeProxy(executor, project_dir, ["docker-compose.prod.yml"])

    assert proxy.stop()
    assert executor.commands[-1].endswith("docker-compose -f docker-compose.prod.yml stop nginx")


def test_proxy_without_compose_file(executor, tmp_path):
    proxy = ComposeProxy(executor, tmp_path, ["docker-compose.yml"])
    assert not proxy.start()
    assert executor.commands == []


def test_renewal(cert_config, executor, project_dir):
    CertificateRenewer(cert_config, executor=executor).run()

    assert executor.ran("certbot renew --standalone --quiet --cert-name example.com")
    assert (project_dir / "ssl" / "key.pem").read_text() == "PRIVATE KEY\n"
    assert executor.commands[-1].endswith("up -d")


def test_renewal_failure_restarts_proxy(cert_config, executor):
    executor.results["certbot renew"] = CommandResult(False, "", "rate limited", 1)

    with pytest.raises(CertificateError):
        CertificateRenewer(cert_config, executor=executor).run()
    assert executor.commands[-1].endswith("up -d")
