"""Tests for the Relauncher pipeline (escalation subprocess mocked)."""

import signal
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rkvm_launcher.environment import CapturedEnvironment
from rkvm_launcher.exceptions import InvalidRoleError, NotFoundError, PrivilegeError
from rkvm_launcher.relauncher import Interrupted, Relauncher

ENVIRON = {
    "HOME": "/home/u",
    "DISPLAY": ":0",
    "WAYLAND_DISPLAY": "wayland-0",
    "TRICKY": "a b; $(id) 'q' \"qq\"",
}


@pytest.fixture()
def layout(tmp_path):
    """bin/, config/ with server and client configs, and a private temp root."""
    bin_dir = tmp_path / "bin"
    config_dir = tmp_path / "config"
    temp_root = tmp_path / "tmp"
    for d in (bin_dir, config_dir, temp_root):
        d.mkdir()
    for role in ("server", "client"):
        (config_dir / f"{role}.toml").write_text("")
    return bin_dir, config_dir, temp_root


@pytest.fixture()
def relauncher(layout):
    bin_dir, config_dir, temp_root = layout
    return Relauncher(
        bin_dir=bin_dir,
        config_dir=config_dir,
        temp_root=temp_root,
        python="/usr/bin/python3",
    )


@pytest.fixture(autouse=True)
def _pkexec_on_path():
    with patch("rkvm_launcher.escalation.shutil.which", side_effect=lambda tool: f"/usr/bin/{tool}"):
        yield


def _fake_popen(returncode=0, consume=True, seen=None, barrier=None):
    """Build a Popen replacement that behaves like the privileged helper.

    Records the command and the environment found in the artifact, and
    unlinks the artifact when *consume* is set.
    """
    seen = {} if seen is None else seen

    def factory(cmd):
        artifact = Path(cmd[-3])
        proc = MagicMock()

        def wait(timeout=None):
            seen.setdefault("calls", []).append(cmd)
            seen.setdefault("artifacts", []).append(artifact)
            seen.setdefault("environs", []).append(
                CapturedEnvironment.loads(artifact.read_text()).to_dict()
            )
            if barrier is not None:
                barrier.wait(timeout=5)
            if consume:
                artifact.unlink()
            return returncode

        proc.wait.side_effect = wait
        return proc

    return factory


def _leftovers(temp_root):
    return list(temp_root.iterdir())


@pytest.mark.parametrize("role", ["../server", "server; id", "", "a b", "server.toml"])
def test_invalid_role_does_nothing(relauncher, layout, role):
    """No privileged action and no artifact for invalid roles."""
    _, _, temp_root = layout
    with patch("rkvm_launcher.relauncher.subprocess.Popen") as mock_popen:
        with pytest.raises(InvalidRoleError):
            relauncher.run(role, environ=ENVIRON)
    mock_popen.assert_not_called()
    assert _leftovers(temp_root) == []


def test_missing_config_skips_escalation(relauncher, layout):
    _, _, temp_root = layout
    with patch("rkvm_launcher.relauncher.subprocess.Popen") as mock_popen:
        with pytest.raises(NotFoundError):
            relauncher.run("laptop", environ=ENVIRON)
    mock_popen.assert_not_called()
    assert _leftovers(temp_root) == []


def test_escalation_invoked_once_with_snapshot(relauncher, layout):
    """The helper sees exactly the captured environment and the config path."""
    bin_dir, config_dir, temp_root = layout
    seen = {}
    with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=_fake_popen(seen=seen)) as mock_popen:
        code = relauncher.run("server", environ=ENVIRON)

    assert code == 0
    mock_popen.assert_called_once()
    cmd = seen["calls"][0]
    assert cmd[:4] == ["/usr/bin/pkexec", "/usr/bin/python3", "-m", "rkvm_launcher.restore"]
    assert cmd[-2:] == [str(bin_dir / "rkvm-server"), str(config_dir / "server.toml")]
    assert seen["environs"] == [ENVIRON]
    assert _leftovers(temp_root) == []


def test_snapshot_taken_before_launch(relauncher):
    """Later changes to the source mapping do not leak into the child."""
    source = dict(ENVIRON)
    seen = {}

    def popen(cmd):
        source["DISPLAY"] = ":99"
        return _fake_popen(seen=seen)(cmd)

    with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=popen):
        relauncher.run("server", environ=source)

    assert seen["environs"][0]["DISPLAY"] == ":0"


def test_defaults_to_process_environment(relauncher):
    seen = {}
    with patch.dict("os.environ", {"RKVM_MARKER": "yes"}):
        with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=_fake_popen(seen=seen)):
            relauncher.run("server")
    assert seen["environs"][0]["RKVM_MARKER"] == "yes"


@pytest.mark.parametrize("status", [1, 3, 42, 126, 127, 255])
def test_child_exit_status_propagated(relauncher, layout, status):
    """Once the helper has consumed the artifact, every status is the child's own."""
    _, _, temp_root = layout
    with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=_fake_popen(returncode=status)):
        assert relauncher.run("client", environ=ENVIRON) == status
    assert _leftovers(temp_root) == []


@pytest.mark.parametrize("status", [126, 127])
def test_denied_escalation_raises(relauncher, layout, status):
    """pkexec's dismissed/denied codes with an untouched artifact mean no relaunch happened."""
    _, _, temp_root = layout
    with patch(
        "rkvm_launcher.relauncher.subprocess.Popen",
        side_effect=_fake_popen(returncode=status, consume=False),
    ):
        with pytest.raises(PrivilegeError, match="did not authorize"):
            relauncher.run("server", environ=ENVIRON)
    assert _leftovers(temp_root) == []


@pytest.mark.parametrize("status", [1, 2, 255])
def test_sudo_refusal_raises(layout, status):
    """sudo reports a failed password or sudoers refusal as 1, never 126/127."""
    bin_dir, config_dir, temp_root = layout
    relauncher = Relauncher(bin_dir, config_dir, escalation="sudo", temp_root=temp_root, python="/usr/bin/python3")
    with patch(
        "rkvm_launcher.relauncher.subprocess.Popen",
        side_effect=_fake_popen(returncode=status, consume=False),
    ):
        with pytest.raises(PrivilegeError, match="sudo did not authorize"):
            relauncher.run("server", environ=ENVIRON)
    assert _leftovers(temp_root) == []


def test_helper_never_started_raises(relauncher):
    """Any failure before the helper consumed the artifact is an escalation failure."""
    with patch(
        "rkvm_launcher.relauncher.subprocess.Popen",
        side_effect=_fake_popen(returncode=1, consume=False),
    ):
        with pytest.raises(PrivilegeError):
            relauncher.run("server", environ=ENVIRON)


def test_child_killed_by_signal_maps_to_128_plus(relauncher):
    with patch(
        "rkvm_launcher.relauncher.subprocess.Popen",
        side_effect=_fake_popen(returncode=-signal.SIGKILL),
    ):
        assert relauncher.run("server", environ=ENVIRON) == 128 + signal.SIGKILL


def test_escalation_tool_missing(relauncher, layout):
    _, _, temp_root = layout
    with patch("rkvm_launcher.escalation.shutil.which", return_value=None):
        with patch("rkvm_launcher.relauncher.subprocess.Popen") as mock_popen:
            with pytest.raises(PrivilegeError, match="PATH"):
                relauncher.run("server", environ=ENVIRON)
    mock_popen.assert_not_called()
    assert _leftovers(temp_root) == []


def test_escalation_spawn_failure(relauncher, layout):
    _, _, temp_root = layout
    with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=PermissionError("nope")):
        with pytest.raises(PrivilegeError, match="Failed to start"):
            relauncher.run("server", environ=ENVIRON)
    assert _leftovers(temp_root) == []


def test_sudo_escalation(layout):
    bin_dir, config_dir, temp_root = layout
    relauncher = Relauncher(bin_dir, config_dir, escalation="sudo", temp_root=temp_root, python="/usr/bin/python3")
    seen = {}
    with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=_fake_popen(seen=seen)):
        relauncher.run("server", environ=ENVIRON)
    assert seen["calls"][0][:3] == ["/usr/bin/sudo", "--", "/usr/bin/python3"]


def test_interrupt_forwards_signal_and_cleans_up(relauncher, layout):
    """A signal while the child runs is forwarded, then the artifact is removed."""
    _, _, temp_root = layout
    proc = MagicMock()
    proc.wait.side_effect = [Interrupted(signal.SIGTERM), 0]

    with patch("rkvm_launcher.relauncher.subprocess.Popen", return_value=proc):
        with pytest.raises(Interrupted) as exc_info:
            relauncher.run("server", environ=ENVIRON)

    assert exc_info.value.exit_code == 128 + signal.SIGTERM
    proc.send_signal.assert_called_once_with(signal.SIGTERM)
    assert _leftovers(temp_root) == []


def test_keyboard_interrupt_cleans_up(relauncher, layout):
    _, _, temp_root = layout
    proc = MagicMock()
    proc.wait.side_effect = KeyboardInterrupt

    with patch("rkvm_launcher.relauncher.subprocess.Popen", return_value=proc):
        with pytest.raises(KeyboardInterrupt):
            relauncher.run("server", environ=ENVIRON)

    assert _leftovers(temp_root) == []


def test_signal_handlers_installed_and_restored(relauncher):
    before = {s: signal.getsignal(s) for s in (signal.SIGTERM, signal.SIGHUP)}
    during = {}

    def popen(cmd):
        during.update({s: signal.getsignal(s) for s in before})
        return _fake_popen()(cmd)

    with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=popen):
        relauncher.run("server", environ=ENVIRON)

    assert all(during[s] is not before[s] for s in before)
    assert {s: signal.getsignal(s) for s in before} == before


def test_real_sigterm_triggers_cleanup(relauncher, layout):
    """Deliver an actual SIGTERM to this process while waiting on the child."""
    _, _, temp_root = layout
    proc = MagicMock()

    def wait(timeout=None):
        if timeout is None:
            signal.raise_signal(signal.SIGTERM)
        return 0

    proc.wait.side_effect = wait

    with patch("rkvm_launcher.relauncher.subprocess.Popen", return_value=proc):
        with pytest.raises(Interrupted):
            relauncher.run("server", environ=ENVIRON)

    proc.send_signal.assert_called_once_with(signal.SIGTERM)
    assert _leftovers(temp_root) == []


def test_concurrent_roles_use_independent_artifacts(relauncher, layout):
    """Two launches in flight at once never share or clobber an artifact."""
    _, _, temp_root = layout
    barrier = threading.Barrier(2)
    seen = {}
    results = {}
    live = []

    factory = _fake_popen(seen=seen, barrier=barrier)

    def popen(cmd):
        live.append(Path(cmd[-3]))
        return factory(cmd)

    def launch(role):
        results[role] = relauncher.run(role, environ={**ENVIRON, "ROLE": role})

    with patch("rkvm_launcher.relauncher.subprocess.Popen", side_effect=popen):
        threads = [threading.Thread(target=launch, args=(r,)) for r in ("server", "client")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

    assert results == {"server": 0, "client": 0}
    assert len(set(live)) == 2
    assert sorted(e["ROLE"] for e in seen["environs"]) == ["client", "server"]
    assert _leftovers(temp_root) == []


def test_sigterm_while_writing_artifact_cleans_up(relauncher, layout):
    """Handlers are already armed while the artifact is being written."""
    _, _, temp_root = layout

    def dumps(self):
        signal.raise_signal(signal.SIGTERM)
        return "{}"

    with patch.object(CapturedEnvironment, "dumps", dumps):
        with patch("rkvm_launcher.relauncher.subprocess.Popen") as mock_popen:
            with pytest.raises(Interrupted):
                relauncher.run("server", environ=ENVIRON)

    mock_popen.assert_not_called()
    assert _leftovers(temp_root) == []


def test_sighup_before_spawn_cleans_up(relauncher, layout):
    """A signal between artifact creation and the spawn still removes the artifact."""
    _, _, temp_root = layout

    def build(*args, **kwargs):
        assert len(_leftovers(temp_root)) == 1
        signal.raise_signal(signal.SIGHUP)
        return ["/usr/bin/pkexec"]

    with patch("rkvm_launcher.relauncher.build_command", side_effect=build):
        with patch("rkvm_launcher.relauncher.subprocess.Popen") as mock_popen:
            with pytest.raises(Interrupted) as exc_info:
                relauncher.run("server", environ=ENVIRON)

    assert exc_info.value.signum == signal.SIGHUP
    mock_popen.assert_not_called()
    assert _leftovers(temp_root) == []
