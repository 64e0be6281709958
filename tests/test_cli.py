"""Tests for CLI commands."""

import shutil

import pytest
import yaml
from pathlib import Path
from typer.testing import CliRunner

from agerekey import cli, config
from agerekey.crypto import RecipientSet
from agerekey.cli import app


runner = CliRunner()


@pytest.fixture
def temp_secrets_repo(tmp_path: Path) -> Path:
    """Create a temporary secrets repo structure."""
    repo = config.RekeyRepo(tmp_path)
    repo.ensure_structure()
    return tmp_path


@pytest.fixture
def repo(temp_secrets_repo: Path, master, fake_age, monkeypatch) -> config.RekeyRepo:
    """A repo with a master identity, using the fake age gateway."""
    repo = config.RekeyRepo(temp_secrets_repo)
    repo.set_config(config.RekeyConfig(master_identities=[str(master[0])]))
    monkeypatch.setattr(cli, "make_gateway", lambda repo: fake_age)
    return repo


def invoke(repo_path, *args, **kwargs):
    return runner.invoke(app, [*args, "--secrets-path", str(repo_path)], **kwargs)


def add_stored(repo, fake_age, master, hostname, name, content: bytes):
    path = repo.secret_path(name)
    fake_age.encrypt(content, RecipientSet.of(identities=[master[0]]), path)
    host_config = repo.get_host_config(hostname)
    host_config.secrets[name] = config.SecretConfig(name, rekey_file=f"secrets/{name}.age")
    repo.set_host_config(host_config)
    return path


def test_init_host(temp_secrets_repo: Path):
    """Initialize a host."""
    result = invoke(temp_secrets_repo, "init-host", "testhost", "--pubkey", "age1testhost")

    assert result.exit_code == 0
    assert "Initialized host: testhost" in result.output

    host_config = config.RekeyRepo(temp_secrets_repo).get_host_config("testhost")
    assert host_config is not None
    assert host_config.pubkey == "age1testhost"


def test_init_host_without_pubkey(temp_secrets_repo: Path):
    result = invoke(temp_secrets_repo, "init-host", "testhost")

    assert result.exit_code == 0
    assert "dummy key" in result.output


def test_init_host_duplicate(temp_secrets_repo: Path):
    """Cannot initialize same host twice."""
    invoke(temp_secrets_repo, "init-host", "testhost")
    result = invoke(temp_secrets_repo, "init-host", "testhost")

    assert result.exit_code == 1
    assert "already configured" in result.output


def test_validate_requires_master_identities(temp_secrets_repo: Path):
    """Pre-flight errors stop the command."""
    invoke(temp_secrets_repo, "init-host", "web1", "--pubkey", "age1web1")

    result = invoke(temp_secrets_repo, "validate")

    assert result.exit_code == 1
    assert "master_identities must be set in src/rekey.toml." in result.output


def test_validate_ok(repo: config.RekeyRepo):
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")

    result = invoke(repo.path, "validate")

    assert result.exit_code == 0
    assert "Configuration OK (1 hosts)" in result.output


def test_validate_warns_about_dummy_pubkey(repo: config.RekeyRepo):
    invoke(repo.path, "init-host", "web1")

    result = invoke(repo.path, "validate")

    assert result.exit_code == 0
    assert "Warning: You have not yet specified a pubkey for host web1" in result.output


def test_add_secret_from_file(repo: config.RekeyRepo, fake_age, master, tmp_path: Path):
    """A plaintext file is encrypted for the master identities."""
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")
    plaintext = tmp_path / "db-pw.txt"
    plaintext.write_text("hunter2")

    result = invoke(repo.path, "add-secret", "web1", "db-pw", str(plaintext))

    assert result.exit_code == 0
    assert "Added secret: db-pw for web1" in result.output
    assert fake_age.decrypt(repo.secret_path("db-pw"), [master[0]]) == b"hunter2"
    secret = repo.get_host_config("web1").secrets["db-pw"]
    assert secret.rekey_file == "secrets/db-pw.age"
    assert secret.generator is None


def test_add_secret_with_generator(repo: config.RekeyRepo):
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")

    result = invoke(repo.path, "add-secret", "web1", "token", "--generator", "hex")

    assert result.exit_code == 0
    assert repo.get_host_config("web1").secrets["token"].generator == "hex"
    assert not repo.secret_path("token").exists()


def test_add_secret_needs_exactly_one_source(repo: config.RekeyRepo, tmp_path: Path):
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")
    plaintext = tmp_path / "x.txt"
    plaintext.write_text("x")

    neither = invoke(repo.path, "add-secret", "web1", "x")
    both = invoke(repo.path, "add-secret", "web1", "x", str(plaintext), "--generator", "hex")

    assert neither.exit_code == 1
    assert both.exit_code == 1
    assert "x" not in repo.get_host_config("web1").secrets


def test_add_secret_unknown_host(repo: config.RekeyRepo):
    result = invoke(repo.path, "add-secret", "ghost", "token", "--generator", "hex")

    assert result.exit_code == 1
    assert "init-host" in result.output


def test_plan(repo: config.RekeyRepo, fake_age, master):
    """The plan lists missing generated secrets and per-host rekeying."""
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")
    add_stored(repo, fake_age, master, "web1", "db-pw", b"hunter2")
    invoke(repo.path, "add-secret", "web1", "token", "--generator", "hex")

    result = invoke(repo.path, "plan")

    assert result.exit_code == 0
    document = yaml.safe_load(result.stdout)
    assert document["generate"] == [{
        "secret": "web1:token",
        "generator": "hex",
        "file": str(repo.secret_path("token")),
    }]
    assert document["rekey"]["web1"]["pubkey"] == "age1web1"
    assert list(document["rekey"]["web1"]["secrets"]) == ["db-pw", "token"]


def test_generate_dry_run(repo: config.RekeyRepo):
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")
    invoke(repo.path, "add-secret", "web1", "token", "--generator", "hex")

    result = invoke(repo.path, "generate", "--dry-run")

    assert result.exit_code == 0
    assert "Would generate web1:token" in result.output
    assert not repo.secret_path("token").exists()


def test_generate_nothing(repo: config.RekeyRepo):
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")

    result = invoke(repo.path, "generate")

    assert result.exit_code == 0
    assert "Nothing to generate." in result.output


def test_generate_cycle(repo: config.RekeyRepo):
    """Cyclic generator dependencies are reported before anything runs."""
    repo.set_config(config.RekeyConfig(
        master_identities=repo.get_config().master_identities,
        generators={
            "from-b": config.GeneratorConfig(script="true", dependencies=["B"]),
            "from-a": config.GeneratorConfig(script="true", dependencies=["A"]),
        },
    ))
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")
    invoke(repo.path, "add-secret", "web1", "A", "--generator", "from-b")
    invoke(repo.path, "add-secret", "web1", "B", "--generator", "from-a")

    result = invoke(repo.path, "generate")

    assert result.exit_code == 1
    assert "Dependency cycle" in result.output
    assert "web1:A" in result.output
    assert "web1:B" in result.output


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash is required")
def test_generate(repo: config.RekeyRepo, fake_age, master):
    repo.set_config(config.RekeyConfig(
        master_identities=repo.get_config().master_identities,
        generators={"static": config.GeneratorConfig(script='printf "value-of-%s" "$name"')},
    ))
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")
    invoke(repo.path, "add-secret", "web1", "token", "--generator", "static")

    result = invoke(repo.path, "generate")

    assert result.exit_code == 0
    assert "Generated 1 secret(s)." in result.output
    assert fake_age.decrypt(repo.secret_path("token"), [master[0]]) == b"value-of-token"


def test_rekey(repo: config.RekeyRepo, fake_age, master, make_identity):
    """Secrets end up in the host's build directory, for the host's key."""
    identity, pubkey = make_identity("web1")
    invoke(repo.path, "init-host", "web1", "--pubkey", pubkey)
    add_stored(repo, fake_age, master, "web1", "db-pw", b"hunter2")

    result = invoke(repo.path, "rekey")

    assert result.exit_code == 0
    assert "Rekey complete!" in result.output
    output = repo.host_build_path("web1") / "db-pw.age"
    assert fake_age.decrypt(output, [identity]) == b"hunter2"


def test_rekey_with_dummy(repo: config.RekeyRepo, fake_age, master, make_identity):
    """Answering 'd' at the prompt rekeys a dummy value."""
    identity, pubkey = make_identity("web1")
    invoke(repo.path, "init-host", "web1", "--pubkey", pubkey)
    path = add_stored(repo, fake_age, master, "web1", "db-pw", b"hunter2")
    fake_age.encrypt(b"other", RecipientSet.single("age1fakesomeoneelse"), path)

    result = invoke(repo.path, "rekey", input="d\n")

    assert result.exit_code == 0
    assert "Failed to decrypt" in result.output
    text = fake_age.decrypt(repo.host_build_path("web1") / "db-pw.age", [identity])
    assert text.startswith(b"This is a dummy replacement value.")


def test_rekey_abort(repo: config.RekeyRepo, fake_age, master, make_identity):
    _, pubkey = make_identity("web1")
    invoke(repo.path, "init-host", "web1", "--pubkey", pubkey)
    path = add_stored(repo, fake_age, master, "web1", "db-pw", b"hunter2")
    fake_age.encrypt(b"other", RecipientSet.single("age1fakesomeoneelse"), path)

    result = invoke(repo.path, "rekey", input="n\n")

    assert result.exit_code == 1
    assert "Aborted by user." in result.output
    assert not repo.host_build_path("web1").exists()


def test_rekey_unknown_host(repo: config.RekeyRepo):
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")

    result = invoke(repo.path, "rekey", "--host", "web2")

    assert result.exit_code == 1
    assert "Unknown host(s): web2" in result.output


def test_list_empty(temp_secrets_repo: Path):
    result = invoke(temp_secrets_repo, "list")

    assert result.exit_code == 0


def test_list_with_host(repo: config.RekeyRepo, fake_age, master, make_identity):
    _, pubkey = make_identity("web1")
    invoke(repo.path, "init-host", "web1", "--pubkey", pubkey)
    invoke(repo.path, "init-host", "web2", "--pubkey", "age1web2")
    add_stored(repo, fake_age, master, "web1", "db-pw", b"hunter2")
    invoke(repo.path, "rekey", "--host", "web1")

    result = invoke(repo.path, "list")

    assert result.exit_code == 0
    assert "db-pw.age" in result.output
    assert "(not rekeyed yet)" in result.output


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash is required")
def test_generate_refuses_dummy_dependency(repo: config.RekeyRepo, fake_age, master):
    """A placeholder dependency fails generation instead of being persisted."""
    repo.set_config(config.RekeyConfig(
        master_identities=repo.get_config().master_identities,
        generators={"digest": config.GeneratorConfig(
            script='decrypt "${deps[0]}" | sha256sum', dependencies=["seed"],
        )},
    ))
    invoke(repo.path, "init-host", "web1", "--pubkey", "age1web1")
    path = add_stored(repo, fake_age, master, "web1", "seed", b"seed")
    fake_age.encrypt(b"other", RecipientSet.single("age1fakesomeoneelse"), path)
    invoke(repo.path, "add-secret", "web1", "derived", "--generator", "digest")

    result = invoke(repo.path, "generate", input="d\n")

    assert result.exit_code == 1
    assert "Not generating web1:derived" in result.output
    assert not repo.secret_path("derived").exists()
