import allure
from click.testing import CliRunner

from taskgate import __version__
from taskgate.main import taskgate

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("CLI Ops"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(taskgate, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
