from pathlib import Path

import pytest

from settle.config.render import TemplateRenderer
from settle.config.secrets import (
    ChainSecretResolver,
    EnvSecretResolver,
    YamlSecretResolver,
    default_resolver,
    find_secrets_file,
)
from settle.errors import DeclarationError


def test_yaml_resolver_walks_dotted_refs(tmp_path: Path):
    f = tmp_path / "secrets.yaml"
    f.write_text("ssh:\n  deploy_pubkey: ssh-ed25519 AAAA deploy\n  port: 22\n")
    r = YamlSecretResolver(f)
    assert r.resolve("ssh.deploy_pubkey") == "ssh-ed25519 AAAA deploy"
    assert r.resolve("ssh.port") == "22"
    with pytest.raises(DeclarationError, match="not found"):
        r.resolve("ssh.missing")
    with pytest.raises(DeclarationError, match="not a scalar"):
        r.resolve("ssh")


def test_env_resolver_name_mapping(monkeypatch):
    r = EnvSecretResolver()
    assert r.env_name("db.password") == "SETTLE_SECRET_DB_PASSWORD"
    monkeypatch.setenv("SETTLE_SECRET_DB_PASSWORD", "hunter2")
    assert r.resolve("db.password") == "hunter2"
    monkeypatch.delenv("SETTLE_SECRET_DB_PASSWORD")
    with pytest.raises(DeclarationError, match=r"\$SETTLE_SECRET_DB_PASSWORD"):
        r.resolve("db.password")


def test_chain_falls_through_and_reports_every_miss(tmp_path: Path, monkeypatch):
    f = tmp_path / "secrets.yaml"
    f.write_text("a: 1\n")
    monkeypatch.setenv("SETTLE_SECRET_B", "two")
    chain = ChainSecretResolver([YamlSecretResolver(f), EnvSecretResolver()])
    assert chain.resolve("a") == "1"
    assert chain.resolve("b") == "two"
    with pytest.raises(DeclarationError) as ei:
        chain.resolve("c")
    assert "secrets.yaml" in str(ei.value) and "SETTLE_SECRET_C" in str(ei.value)


def test_find_secrets_file_env_override(tmp_path: Path, monkeypatch):
    site = tmp_path / "site.yaml"
    (tmp_path / "secrets.yaml").write_text("a: 1\n")
    elsewhere = tmp_path / "vault" / "prod.yaml"
    elsewhere.parent.mkdir()
    elsewhere.write_text("a: 2\n")

    monkeypatch.delenv("SETTLE_SECRETS_FILE", raising=False)
    assert find_secrets_file(site) == tmp_path / "secrets.yaml"

    monkeypatch.setenv("SETTLE_SECRETS_FILE", str(elsewhere))
    assert find_secrets_file(site) == elsewhere
    assert default_resolver(site).resolve("a") == "2"

    monkeypatch.setenv("SETTLE_SECRETS_FILE", str(tmp_path / "missing.yaml"))
    assert find_secrets_file(site) is None


def test_renderer_exposes_vars_host_and_secret(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("SETTLE_SECRET_TOKEN", "t0k")
    r = TemplateRenderer(tmp_path, secrets=EnvSecretResolver())
    out = r.render_string(
        "{{ user }}@{{ host.name }} {{ vars.user }} {{ secret('token') }}\n",
        {"user": "deploy"},
        {"name": "web1"},
    )
    assert out == "deploy@web1 deploy t0k\n"


def test_renderer_without_resolver_refuses_secrets(tmp_path: Path):
    r = TemplateRenderer(tmp_path)
    with pytest.raises(DeclarationError, match="no resolver"):
        r.render_string("{{ secret('x') }}", {}, {"name": "web1"})


def test_missing_template_file(tmp_path: Path):
    r = TemplateRenderer(tmp_path)
    with pytest.raises(DeclarationError, match="nope.j2"):
        r.render_file("nope.j2", {}, {"name": "web1"})
