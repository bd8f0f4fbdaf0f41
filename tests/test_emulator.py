"""
Frontend tests that do not need a display: argument parsing, gamepad key
mapping and the audio bell.
"""
import os
import threading

import pytest

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")

pytest.importorskip("tkinter")
pytest.importorskip("pygame")

import chip8_emulator  # noqa: E402
from chip8_cpu import Chip8CPU, EmulatorConfig, TimerClock  # noqa: E402
from chip8_emulator import (KEYBOARD_MAP, Chip8Audio, Chip8Controller,  # noqa: E402
                            Chip8GUI, parse_args)


class TestArgs:

    def test_defaults(self):
        args = parse_args([])
        assert args.rom is None
        assert args.speed == 500
        assert args.log_level == "WARNING"
        assert not args.scanlines
        assert not args.mute

    def test_rom_and_options(self):
        args = parse_args(["pong.ch8", "--speed", "700", "--scanlines", "--mute",
                           "--log-level", "DEBUG"])
        assert args.rom == "pong.ch8"
        assert args.speed == 700
        assert args.scanlines
        assert args.log_level == "DEBUG"
        assert args.mute

    def test_rejects_unknown_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestKeyboardMap:

    def test_covers_whole_keypad(self):
        assert sorted(KEYBOARD_MAP.values()) == list(range(16))


class TestController:

    @pytest.fixture
    def controller(self):
        events = []
        ctl = Chip8Controller(lambda key, pressed: events.append((key, pressed)))
        ctl.events = events
        return ctl

    def test_button_maps_to_key(self, controller):
        controller.handle_button(Chip8Controller.BUTTON_CROSS, True)
        controller.handle_button(Chip8Controller.BUTTON_CROSS, False)
        assert controller.events == [(0x5, True), (0x5, False)]

    def test_unmapped_button_ignored(self, controller):
        controller.handle_button(42, True)
        assert controller.events == []

    def test_hat_releases_previous_direction(self, controller):
        controller.handle_hat((0, 1))
        controller.handle_hat((1, 0))
        controller.handle_hat((0, 0))
        assert controller.events == [
            (0x2, True),
            (0x2, False), (0x6, True),
            (0x6, False),
        ]

    def test_special_buttons(self, controller):
        calls = []
        controller.on_reset = lambda: calls.append("reset")
        controller.on_pause_toggle = lambda: calls.append("pause")
        controller.handle_button(Chip8Controller.BUTTON_SHARE, True)
        controller.handle_button(Chip8Controller.BUTTON_OPTIONS, True)
        assert calls == ["reset", "pause"]
        assert controller.events == []


class TestAudio:

    def test_muted_beep_is_counted(self, capsys):
        audio = Chip8Audio()
        audio.muted = True
        audio.beep()
        assert audio.beeps == 1
        assert capsys.readouterr().out == ""

    def test_beep_rings_bell(self, capsys):
        Chip8Audio().beep()
        assert capsys.readouterr().out == "\a"

    def test_toggle_mute(self, capsys):
        audio = Chip8Audio()
        audio.toggle_mute()
        audio.beep()
        assert capsys.readouterr().out == ""
        audio.toggle_mute()
        audio.beep()
        assert capsys.readouterr().out == "\a"
        assert audio.beeps == 2

    def test_start_muted(self, capsys):
        Chip8Audio(muted=True).beep()
        assert capsys.readouterr().out == ""


def test_module_logger_name():
    assert chip8_emulator.logger.name == "chip8_emulator"


class TestFrameCadence:

    def make_gui(self, hz, multiplier=1):
        # Only the attributes _run_frame touches, no Tk window
        gui = Chip8GUI.__new__(Chip8GUI)
        gui.config = EmulatorConfig(cpu_frequency=hz)
        gui.cpu = Chip8CPU(gui.config)
        gui.cpu.load_rom(bytes([0x12, 0x00]))
        gui.timer_clock = TimerClock(gui.config.timer_frequency)
        gui.speed_multiplier = multiplier
        gui._cpu_lock = threading.Lock()
        gui._cycle_budget = 0
        return gui

    @pytest.mark.parametrize("hz", [30, 100, 500, 1000])
    def test_one_second_of_frames_runs_requested_rate(self, hz):
        gui = self.make_gui(hz)
        total = sum(gui._run_frame() for _ in range(gui.config.target_fps))
        assert total == hz
        assert gui.cpu.cycles == hz

    def test_rate_below_frame_rate_still_runs(self):
        gui = self.make_gui(30)
        counts = [gui._run_frame() for _ in range(4)]
        assert sorted(counts) == [0, 0, 1, 1]
        assert gui.cpu.cycles == 2

    def test_speed_multiplier(self):
        gui = self.make_gui(100, multiplier=4)
        total = sum(gui._run_frame() for _ in range(60))
        assert total == 400
