import os
import sys

import pytest

from buildyard.errors import ConfigError
from buildyard.lint import lint_script

from conftest import make_catalog, make_config, pkg

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake linter is a shell script")


@pytest.fixture
def linter(tmp_path):
    """Rejects any script containing the word FIXME."""
    path = tmp_path / "fake-linter"
    path.write_text('#!/bin/sh\nif grep -n FIXME; then exit 1; fi\nexit 0\n', encoding="utf-8")
    os.chmod(path, 0o755)
    return str(path)


def test_lint_script(linter):
    assert lint_script([linter], "#!/bin/bash\nmake\n") is None
    assert lint_script([linter], "#!/bin/bash\n# FIXME\n") == "2:# FIXME"


def test_lint_failure_stops_the_run(tmp_path, cluster, make_scheduler, linter):
    config = make_config(tmp_path, script_linter=linter)
    catalog = make_catalog(
        config,
        pkg("a", phases=["build"]),
        pkg("b", phases=["build"], script="#!/bin/bash\n# build {{ package.name }} {{ phase }}\n# FIXME\n"),
    )
    scheduler = make_scheduler(config, catalog)

    with pytest.raises(ConfigError) as e:
        scheduler.run()
    assert e.value.kind == "lint_failed"
    assert list(e.value.details) == ["b 1.0 (build)"]
    assert cluster.containers == []


def test_clean_scripts_run(tmp_path, cluster, make_scheduler, linter):
    config = make_config(tmp_path, script_linter=linter)
    summary = make_scheduler(config, make_catalog(config, pkg("a"))).run()
    assert summary.exit_code == 0
    assert cluster.packages_run() == ["a", "a"]


def test_lint_can_be_disabled(tmp_path, cluster, make_scheduler, linter):
    config = make_config(tmp_path, script_linter=linter)
    catalog = make_catalog(config, pkg("a", phases=["build"], script="# build {{ package.name }} {{ phase }}\n# FIXME\n"))
    summary = make_scheduler(config, catalog, lint=False).run()
    assert summary.exit_code == 0


def test_unrenderable_scripts_are_left_to_their_job(tmp_path, cluster, make_scheduler, linter):
    config = make_config(tmp_path, script_linter=linter)
    catalog = make_catalog(config, pkg("a", phases=["build"], script="{{ nope }}"))
    summary = make_scheduler(config, catalog).run()
    assert summary.job("a").error_kind == "undefined_variable"


def test_missing_linter(tmp_path, cluster, make_scheduler):
    config = make_config(tmp_path, script_linter=f"{tmp_path / 'no-such-linter'} --strict")
    with pytest.raises(ConfigError) as e:
        make_scheduler(config, make_catalog(config, pkg("a"))).run()
    assert e.value.kind == "linter_unavailable"
