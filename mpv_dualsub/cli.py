import asyncio
import json
import logging
import pathlib
import re
import shutil
import time
from typing import Optional

import cattrs
import click
from python_mpv_jsonipc import MPVError

from . import ttml
from .bridge import NotificationHub
from .config import Config, get_config, get_config_path, user_config_path
from .coordinator import ModeCoordinator
from .interceptor import InterceptSource
from .models import Mode, SubtitleEntry
from .mpv_host import MpvHostBridge
from .overlay import OsdSurface
from .settings import DUAL_ENABLED, SettingsStore
from .timeindex import build_time_index

log = logging.getLogger("cli")


def _resolve_executable(cfg: Config) -> None:
    """Check if the configured MPV executable exists; prompt if not found."""
    if not cfg.mpv.start_mpv:
        return

    exe = cfg.mpv.executable
    if exe and (pathlib.Path(exe).is_file() or shutil.which(exe)):
        return

    which_mpv = shutil.which("mpv")

    if exe:
        click.echo(f"MPV executable not found: {exe}")
    else:
        click.echo("MPV executable path not configured.")

    while True:
        prompt_kwargs: dict = {"text": "Enter path to mpv executable"}
        if which_mpv:
            prompt_kwargs["default"] = which_mpv
        answer = click.prompt(**prompt_kwargs).strip().strip('"').strip("'")
        found = str(pathlib.Path(answer)) if pathlib.Path(answer).is_file() else shutil.which(answer)
        if found:
            cfg.mpv.executable = found
            _save_executable(found)
            click.echo(f"Saved mpv executable: {found}")
            return
        click.echo(f"Not found: {answer}")


def _save_executable(exe_path: str) -> None:
    """Persist the executable path to the user's config file.

    The user file starts as a copy of the configuration in use, so the other
    settings keep applying once it takes precedence.
    """
    source = get_config_path()
    target = user_config_path()
    if source is None:
        return
    # Normalise to forward slashes for TOML compatibility.
    exe_path = exe_path.replace("\\", "/")
    text = source.read_text(encoding="utf8")
    new_text, count = re.subn(
        r'^[#\s]*executable\s*=\s*"[^"]*"',
        f'executable = "{exe_path}"',
        text,
        count=1,
        flags=re.MULTILINE,
    )
    if not count:
        log.warning("no executable entry in %s, not saving", source)
        return
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(new_text, encoding="utf8")
    log.info("saved mpv executable to %s", target)


def _connect(hub: NotificationHub, cfg: Config, timeout: float = 30.0, interval: float = 0.5) -> MpvHostBridge:
    # MPV's IPC pipe may not be ready yet.
    deadline = time.monotonic() + timeout
    while True:
        try:
            return MpvHostBridge(hub, cfg)
        except MPVError:
            if time.monotonic() >= deadline:
                raise click.ClickException(
                    f"Could not connect to MPV IPC pipe within {timeout:.0f}s. "
                    "Is MPV running with input-ipc-server enabled?"
                )
            log.debug("MPV IPC pipe not ready, retrying…")
            time.sleep(interval)


async def _serve(bridge: MpvHostBridge, hub: NotificationHub, cfg: Config, path: Optional[str]):
    await bridge.attach()
    settings = SettingsStore(cfg.languages)
    surface = OsdSurface(bridge.command, cfg.overlay)

    def make_interceptor() -> InterceptSource:
        return InterceptSource(
            bridge, hub, settings, cfg,
            position_resolver=surface.position_for,
            region_sink=surface.set_region_configs,
        )

    coordinator = ModeCoordinator(bridge, hub, settings, cfg, intercept_factory=make_interceptor)

    def on_mode_changed(mode: Mode):
        surface.clear()
        log.debug("status: %s", coordinator.get_status())

    def on_error(error: Exception):
        surface.clear()
        bridge.set_native_visibility(True)
        bridge.show_text(f"subtitles unavailable: {error}")

    def on_toggle():
        settings.set(DUAL_ENABLED, not settings.dual_enabled)
        bridge.show_text("dual subtitles " + ("on" if settings.dual_enabled else "off"))

    coordinator.on_subtitle_changed(surface.show)
    coordinator.on_mode_changed(on_mode_changed)
    coordinator.on_notice(bridge.show_text)
    coordinator.on_error(on_error)
    bridge.on_toggle = on_toggle

    # the overlay draws both lines; native rendering would duplicate the primary one
    bridge.set_native_visibility(False)
    try:
        if path:
            bridge.command("loadfile", path)
        await coordinator.start()
        await bridge.wait_closed()
    finally:
        log.info("final status: %s", coordinator.get_status())
        coordinator.cleanup()
        if not bridge.closed:
            surface.shutdown()
            bridge.set_native_visibility(True)
        bridge.close()
        hub.close()


@click.group()
def cli():
    """
    mpv-dualsub: two subtitle languages at once in MPV.
    """


@cli.command()
@click.argument("path", required=False, default=None)
@click.option("--loglevel", default="INFO", show_default=True)
def run(path: Optional[str], loglevel: str):
    """
    Attach to a running MPV instance (via IPC socket configured in
    mpv.conf / config.toml) and show the primary and secondary subtitle
    languages together on the OSD.

    Optionally pass a PATH to load that file into MPV on startup.
    """
    logging.basicConfig(
        level=loglevel,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for _noisy in ("asyncio", "python_mpv_jsonipc"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)

    cfg = get_config()
    _resolve_executable(cfg)

    hub = NotificationHub()
    bridge = _connect(hub, cfg)
    try:
        asyncio.run(_serve(bridge, hub, cfg, path))
    except KeyboardInterrupt:
        log.info("interrupted")
    finally:
        try:
            bridge.mpv.terminate()
        except Exception:
            log.debug("terminating the IPC connection failed", exc_info=True)


def _timestamp(pos: float) -> str:
    secs = pos % 60
    mins = int((pos // 60) % 60)
    hours = int(pos // 3600)
    return f"{hours:02d}:{mins:02d}:{secs:06.3f}"


def _format_entry(entry: SubtitleEntry) -> str:
    head = f"{_timestamp(entry.start_time)} --> {_timestamp(entry.end_time)}"
    if entry.region_id:
        head += f"  [{entry.region_id}]"
    return f"{head}\n{entry.text}"


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path))
@click.option("--at", "at", type=float, default=None, help="Only show the entry at this time (seconds).")
@click.option("--json", "as_json", is_flag=True, default=False)
def parse(file: pathlib.Path, at: Optional[float], as_json: bool):
    """Parse a timed-text FILE and print its entries and layout regions."""
    cfg = get_config()
    result = ttml.parse(file.read_text(encoding="utf8"))
    if not result.subtitles:
        raise click.ClickException(f"no subtitle entries in {file}")
    conv = cattrs.GenConverter()

    if at is not None:
        index = build_time_index(result.subtitles, cfg.index.bucket_seconds, cfg.index.max_timestamp)
        entry = index.lookup(at, cfg.index.tolerance)
        if as_json:
            click.echo(json.dumps(conv.unstructure(entry), ensure_ascii=False))
        elif entry is None:
            click.echo(f"no entry at {_timestamp(at)}")
        else:
            click.echo(_format_entry(entry))
        return

    if as_json:
        click.echo(json.dumps(
            {
                "subtitles": conv.unstructure(result.subtitles),
                "regions": conv.unstructure(result.region_configs),
            },
            ensure_ascii=False,
            indent=2,
        ))
        return

    for entry in result.subtitles:
        click.echo(_format_entry(entry))
        click.echo()
    for region in result.region_configs.values():
        click.echo(
            f"region {region.id}: origin {region.origin.x:.0%} {region.origin.y:.0%}, "
            f"extent {region.extent.w:.0%} {region.extent.h:.0%}, align {region.display_align.value}"
        )
    click.echo(f"{len(result.subtitles)} entries, {len(result.region_configs)} regions")
