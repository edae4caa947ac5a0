from pathlib import Path

from click.testing import CliRunner

from stratum.cli import Context, check, cli, resolve
from stratum.config import Config
from stratum.whiteouts import create_whiteout


def test_resolve(seeded_ro: Config) -> None:
    c = seeded_ro
    ctx = Context(config=c)
    runner = CliRunner()

    res = runner.invoke(resolve, ["/docs/guide.txt"], obj=ctx)
    assert res.exit_code == 0
    assert res.output.splitlines()[0] == "/docs/guide.txt: RO"
    assert f"concrete: {c.ro_branch / 'docs' / 'guide.txt'}" in res.output
    assert "size: 5" in res.output

    (c.rw_branch / "docs").mkdir()
    res = runner.invoke(resolve, ["/docs"], obj=ctx)
    assert res.output.splitlines()[0] == "/docs: RW_AND_RO"

    create_whiteout(c, "/readme")
    res = runner.invoke(resolve, ["/readme"], obj=ctx)
    assert res.exit_code == 0
    assert res.output == "/readme: NONE\n"


def test_check(seeded_ro: Config) -> None:
    c = seeded_ro
    ctx = Context(config=c)
    runner = CliRunner()

    res = runner.invoke(check, obj=ctx)
    assert res.exit_code == 0
    assert res.output == "No inconsistencies found.\n"

    create_whiteout(c, "/gone")
    res = runner.invoke(check, obj=ctx)
    assert res.exit_code == 1
    assert "orphan-whiteout: /gone" in res.output

    res = runner.invoke(check, ["--repair"], obj=ctx)
    assert res.exit_code == 0
    assert "Repaired 1 inconsistencies." in res.output
    assert not (c.rw_branch / ".wh.gone").exists()


def test_cli_reads_config_file(seeded_ro: Config, isolated_dir: Path) -> None:
    c = seeded_ro
    cfgpath = isolated_dir / "config.toml"
    cfgpath.write_text(
        f"""
        rw_branch = "{c.rw_branch}"
        ro_branch = "{c.ro_branch}"
        mount_dir = "{c.mount_dir}"
        """
    )
    res = CliRunner().invoke(cli, ["--config", str(cfgpath), "resolve", "/readme"])
    assert res.exit_code == 0
    assert res.output.splitlines()[0] == "/readme: RO"


def test_cli_missing_config(isolated_dir: Path) -> None:
    res = CliRunner().invoke(cli, ["--config", str(isolated_dir / "nope.toml"), "check"])
    assert res.exit_code != 0
