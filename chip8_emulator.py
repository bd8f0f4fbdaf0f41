#!/usr/bin/env python3
"""
Cat's Chip-8 Emulator
Tkinter frontend for the CHIP-8 core with keyboard and gamepad input.
Author: Team Flames / Samsoft
"""

import argparse
import logging
import os
import sys
import threading
import time
import tkinter as tk
from tkinter import filedialog, messagebox
from typing import Callable, Optional

import pygame

from chip8_cpu import (Chip8CPU, Chip8Error, EmulatorConfig, RomLoadError,
                       TimerClock)

logger = logging.getLogger(__name__)

# Constants
WINDOW_WIDTH = 640
WINDOW_HEIGHT = 400
DISPLAY_AREA_HEIGHT = 352
STATUS_BAR_HEIGHT = 48

COLORS = {
    'bg': '#0C0C0C',
    'pixel_on': '#C0C0C0',
    'pixel_off': '#1A1A1A',
    'status_bg': '#1E1E1E',
    'status_fg': '#707070',
}

MAX_SPEED_MULTIPLIER = 8

# CHIP-8 Hex Keypad    PC Keyboard
#  1 2 3 C             1 2 3 4
#  4 5 6 D      →      Q W E R
#  7 8 9 E             A S D F
#  A 0 B F             Z X C V

KEYBOARD_MAP = {
    '1': 0x1, '2': 0x2, '3': 0x3, '4': 0xC,
    'q': 0x4, 'w': 0x5, 'e': 0x6, 'r': 0xD,
    'a': 0x7, 's': 0x8, 'd': 0x9, 'f': 0xE,
    'z': 0xA, 'x': 0x0, 'c': 0xB, 'v': 0xF,
}


class Chip8Audio:
    """Sound timer output through the terminal bell"""

    def __init__(self, muted: bool = False):
        self.muted = muted
        self.beeps = 0

    def toggle_mute(self):
        self.muted = not self.muted
        logger.info("Audio %s", "muted" if self.muted else "unmuted")

    def beep(self):
        """Ring once for a tone request"""
        self.beeps += 1
        if not self.muted:
            print('\a', end='', flush=True)


class Chip8Controller:
    """Gamepad input handler, polled from a background thread"""

    BUTTON_SQUARE = 0
    BUTTON_CIRCLE = 1
    BUTTON_CROSS = 2
    BUTTON_TRIANGLE = 3
    BUTTON_L1 = 4
    BUTTON_R1 = 5
    BUTTON_L2 = 6
    BUTTON_R2 = 7
    BUTTON_SHARE = 8
    BUTTON_OPTIONS = 9

    # Face and shoulder buttons to CHIP-8 keys
    BUTTON_TO_KEY = {
        BUTTON_CIRCLE: 0x6,
        BUTTON_SQUARE: 0x4,
        BUTTON_TRIANGLE: 0x2,
        BUTTON_CROSS: 0x5,
        BUTTON_L1: 0x1,
        BUTTON_R1: 0xC,
        BUTTON_L2: 0xA,
        BUTTON_R2: 0xB,
    }

    # D-pad (as hat) to the 2/4/6/8 arrow cluster
    HAT_TO_KEY = {
        (0, 1): 0x2,
        (0, -1): 0x8,
        (-1, 0): 0x4,
        (1, 0): 0x6,
    }

    def __init__(self, on_key_change: Callable[[int, bool], None]):
        self.on_key_change = on_key_change
        self.joystick = None
        self.connected = False
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._hat_key: Optional[int] = None

        self.on_reset: Optional[Callable] = None
        self.on_pause_toggle: Optional[Callable] = None

        pygame.init()
        pygame.joystick.init()

    def start(self):
        """Start controller polling thread"""
        self.running = True
        self._thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._thread.start()

    def stop(self):
        """Stop controller polling"""
        self.running = False
        if self._thread:
            self._thread.join(timeout=1.0)

    def _poll_loop(self):
        while self.running:
            self._check_connection()
            if self.connected:
                self._process_input()
            time.sleep(1 / 120)  # 120Hz polling

    def _check_connection(self):
        """Check for controller connection/disconnection"""
        pygame.event.pump()
        joystick_count = pygame.joystick.get_count()

        if joystick_count > 0 and not self.connected:
            self.joystick = pygame.joystick.Joystick(0)
            self.joystick.init()
            self.connected = True
            logger.info("Controller connected: %s", self.joystick.get_name())
        elif joystick_count == 0 and self.connected:
            self.connected = False
            self.joystick = None
            logger.info("Controller disconnected")

    def _process_input(self):
        for event in pygame.event.get():
            if event.type == pygame.JOYBUTTONDOWN:
                self.handle_button(event.button, True)
            elif event.type == pygame.JOYBUTTONUP:
                self.handle_button(event.button, False)
            elif event.type == pygame.JOYHATMOTION:
                self.handle_hat(event.value)

    def handle_button(self, button: int, pressed: bool):
        if pressed and button == self.BUTTON_SHARE and self.on_reset:
            self.on_reset()
        elif pressed and button == self.BUTTON_OPTIONS and self.on_pause_toggle:
            self.on_pause_toggle()
        elif button in self.BUTTON_TO_KEY:
            self.on_key_change(self.BUTTON_TO_KEY[button], pressed)

    def handle_hat(self, value: tuple):
        """Handle D-pad input, one direction held at a time"""
        if self._hat_key is not None:
            self.on_key_change(self._hat_key, False)
        self._hat_key = self.HAT_TO_KEY.get(tuple(value))
        if self._hat_key is not None:
            self.on_key_change(self._hat_key, True)


class Chip8Display:
    """Tkinter display renderer"""

    def __init__(self, canvas: tk.Canvas, config: EmulatorConfig):
        self.canvas = canvas
        self.width = config.display_width
        self.height = config.display_height
        self.scale_x = WINDOW_WIDTH / self.width
        self.scale_y = DISPLAY_AREA_HEIGHT / self.height
        self.scanlines_enabled = False
        self.pixel_rects = []
        self.scanline_rects = []
        self._last_frame = None

        self._create_pixels()

    def _create_pixels(self):
        """Pre-create one rectangle per framebuffer cell, row-major"""
        self.canvas.delete("all")
        self.pixel_rects = []

        for y in range(self.height):
            for x in range(self.width):
                x1 = x * self.scale_x
                y1 = y * self.scale_y
                rect = self.canvas.create_rectangle(
                    x1, y1, x1 + self.scale_x, y1 + self.scale_y,
                    fill=COLORS['pixel_off'], outline=""
                )
                self.pixel_rects.append(rect)

    def _create_scanlines(self):
        for rect in self.scanline_rects:
            self.canvas.delete(rect)
        self.scanline_rects = []

        if self.scanlines_enabled:
            for y in range(0, DISPLAY_AREA_HEIGHT, int(self.scale_y * 2)):
                rect = self.canvas.create_rectangle(
                    0, y + self.scale_y,
                    WINDOW_WIDTH, y + self.scale_y * 2,
                    fill="#000000", stipple="gray50", outline=""
                )
                self.scanline_rects.append(rect)

    def toggle_scanlines(self):
        """Toggle scanline effect"""
        self.scanlines_enabled = not self.scanlines_enabled
        self._create_scanlines()

    def render(self, display: bytearray):
        """Render the flat framebuffer, repainting only changed cells"""
        previous = self._last_frame
        for index, pixel in enumerate(display):
            if previous is not None and previous[index] == pixel:
                continue
            color = COLORS['pixel_on'] if pixel else COLORS['pixel_off']
            self.canvas.itemconfig(self.pixel_rects[index], fill=color)
        self._last_frame = bytes(display)


class Chip8GUI:
    """Main application GUI"""

    def __init__(self, config: Optional[EmulatorConfig] = None,
                 scanlines: bool = False, muted: bool = False):
        self.config = config or EmulatorConfig()

        self.root = tk.Tk()
        self.root.title("Cat's Chip-8 Emulator")
        self.root.geometry(f"{WINDOW_WIDTH}x{WINDOW_HEIGHT}")
        self.root.resizable(False, False)
        self.root.configure(bg=COLORS['bg'])

        # Components
        self.cpu = Chip8CPU(self.config)
        self.audio = Chip8Audio(muted)
        self.cpu.on_tone = self.audio.beep
        self.timer_clock = TimerClock(self.config.timer_frequency)

        # Serializes step() with reset/load from the Tk thread
        self._cpu_lock = threading.Lock()
        self._cycle_budget = 0

        # State
        self.running = False
        self.paused = False
        self.speed_multiplier = 1
        self.fps = 0
        self.frame_count = 0
        self.last_fps_time = time.time()
        self.error_message = ""

        self._create_ui()
        self.display_renderer = Chip8Display(self.canvas, self.config)
        if scanlines:
            self.display_renderer.toggle_scanlines()

        self.controller = Chip8Controller(self._on_controller_key)
        self.controller.on_reset = self._reset
        self.controller.on_pause_toggle = self._toggle_pause

        self._bind_keys()
        self.controller.start()

        self._emu_thread: Optional[threading.Thread] = None
        self._emu_running = False

    def _create_ui(self):
        """Create UI components"""
        self.canvas = tk.Canvas(
            self.root,
            width=WINDOW_WIDTH,
            height=DISPLAY_AREA_HEIGHT,
            bg=COLORS['bg'],
            highlightthickness=0
        )
        self.canvas.pack(side=tk.TOP)

        self.status_frame = tk.Frame(
            self.root,
            height=STATUS_BAR_HEIGHT,
            bg=COLORS['status_bg']
        )
        self.status_frame.pack(side=tk.BOTTOM, fill=tk.X)
        self.status_frame.pack_propagate(False)

        self.rom_label = self._status_label("No ROM", tk.LEFT)
        self.fps_label = self._status_label("FPS: 0", tk.LEFT)
        self.state_label = self._status_label("Stopped", tk.RIGHT)
        self.speed_label = self._status_label("1×", tk.RIGHT)

    def _status_label(self, text: str, side: str) -> tk.Label:
        label = tk.Label(
            self.status_frame,
            text=text,
            fg=COLORS['status_fg'],
            bg=COLORS['status_bg'],
            font=("Courier", 10)
        )
        label.pack(side=side, padx=10)
        return label

    def _bind_keys(self):
        """Bind keyboard events"""
        self.root.bind("<KeyPress>", self._on_key_down)
        self.root.bind("<KeyRelease>", self._on_key_up)

        # Control keys
        self.root.bind("<Control-r>", lambda e: self._reset())
        self.root.bind("<Control-o>", lambda e: self._open_file_dialog())
        self.root.bind("<space>", lambda e: self._toggle_pause())
        self.root.bind("<F1>", lambda e: self._decrease_speed())
        self.root.bind("<F2>", lambda e: self._increase_speed())
        self.root.bind("<F3>", lambda e: self.display_renderer.toggle_scanlines())
        self.root.bind("<F4>", lambda e: self.audio.toggle_mute())

    def _on_key_down(self, event):
        key = event.keysym.lower()
        if key in KEYBOARD_MAP:
            self.cpu.set_key(KEYBOARD_MAP[key], True)

    def _on_key_up(self, event):
        key = event.keysym.lower()
        if key in KEYBOARD_MAP:
            self.cpu.set_key(KEYBOARD_MAP[key], False)

    def _on_controller_key(self, key: int, pressed: bool):
        self.cpu.set_key(key, pressed)

    def _open_file_dialog(self):
        """Open file dialog to select ROM"""
        filepath = filedialog.askopenfilename(
            title="Select CHIP-8 ROM",
            filetypes=[("CHIP-8 ROM", "*.ch8"), ("All files", "*.*")]
        )
        if filepath:
            self.load_rom(filepath)

    def load_rom(self, filepath: str):
        """Load ROM from file and start running it"""
        try:
            with self._cpu_lock:
                self.cpu.load_rom_file(filepath)
        except RomLoadError as e:
            logger.error("%s", e)
            messagebox.showerror("Error", f"Failed to load ROM: {e}")
            return

        self.rom_label.config(text=f"ROM: {self.cpu.rom_name}")
        self.display_renderer.render(self.cpu.state.display)
        self._start_emulation()

    def _start_emulation(self):
        """Start the emulation thread and the render loop"""
        if self._emu_running:
            return

        self._emu_running = True
        self.running = True
        self.paused = False
        self._update_status()

        self.timer_clock.restart()
        self._emu_thread = threading.Thread(target=self._emulation_loop, daemon=True)
        self._emu_thread.start()

        self._render_loop()

    def _emulation_loop(self):
        """Run cpu_frequency steps per second in frame-sized batches"""
        frame_time = 1 / self.config.target_fps

        while self._emu_running:
            started = time.monotonic()
            if not self.paused:
                try:
                    self._run_frame()
                except Chip8Error as e:
                    logger.error("CPU error: %s", e)
                    self.error_message = str(e)
                    # Auto-reset after crash
                    time.sleep(2)
                    self._reset()
            else:
                self.timer_clock.restart()

            time.sleep(max(0.0, frame_time - (time.monotonic() - started)))

    def _run_frame(self) -> int:
        """Execute one frame's share of instructions, returns the count"""
        # Budget is kept in units of 1/target_fps instructions; the remainder
        # carries into the next frame so rates below the frame rate still run
        fps = self.config.target_fps
        self._cycle_budget += self.config.cpu_frequency * self.speed_multiplier
        cycles = self._cycle_budget // fps
        self._cycle_budget -= cycles * fps

        with self._cpu_lock:
            for _ in range(cycles):
                self.cpu.step(self.timer_clock.ticks())
        return cycles

    def _render_loop(self):
        """Render loop for display updates"""
        if not self._emu_running:
            return

        state = self.cpu.state
        if state.draw_flag:
            state.draw_flag = False
            self.display_renderer.render(state.display)

        self.frame_count += 1
        now = time.time()
        if now - self.last_fps_time >= 1.0:
            self.fps = self.frame_count
            self.frame_count = 0
            self.last_fps_time = now
            self.fps_label.config(text=f"FPS: {self.fps}")
            self._update_status()

        self.root.after(1000 // self.config.target_fps, self._render_loop)

    def _update_status(self):
        """Update status display"""
        if self.error_message:
            self.state_label.config(text="Crashed")
        elif self.paused:
            self.state_label.config(text="Paused")
        elif self.cpu.waiting_for_key:
            self.state_label.config(text="Waiting for key")
        elif self.running:
            self.state_label.config(text="Running")
        else:
            self.state_label.config(text="Stopped")

        self.speed_label.config(text=f"{self.speed_multiplier}×")

    def _reset(self):
        """Reload the current ROM"""
        if not self.cpu.rom_loaded:
            return
        with self._cpu_lock:
            self.cpu.load_rom(self.cpu.rom_data, self.cpu.rom_name)
            self.timer_clock.restart()
        self.error_message = ""

    def _toggle_pause(self):
        self.paused = not self.paused
        self._update_status()

    def _increase_speed(self):
        if self.speed_multiplier < MAX_SPEED_MULTIPLIER:
            self.speed_multiplier *= 2
            self._update_status()

    def _decrease_speed(self):
        if self.speed_multiplier > 1:
            self.speed_multiplier //= 2
            self._update_status()

    def run(self):
        """Run the application"""
        self.root.protocol("WM_DELETE_WINDOW", self._on_close)
        self.root.mainloop()

    def _on_close(self):
        """Handle window close"""
        self._emu_running = False
        self.controller.stop()
        pygame.quit()
        self.root.destroy()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cat-chip8",
        description="Cat's Chip-8 Emulator",
    )
    parser.add_argument("rom", nargs="?", default=None,
                        help="CHIP-8 program image to run")
    parser.add_argument("--speed", type=int, default=EmulatorConfig.cpu_frequency,
                        metavar="HZ", help="instructions per second (default: %(default)s)")
    parser.add_argument("--scanlines", action="store_true",
                        help="start with the scanline overlay enabled")
    parser.add_argument("--mute", action="store_true",
                        help="start with the sound timer bell muted (toggle with F4)")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="logging verbosity (default: %(default)s)")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level,
                        format="[%(levelname)s] %(name)s: %(message)s",
                        stream=sys.stderr)

    app = Chip8GUI(EmulatorConfig(cpu_frequency=args.speed),
                   scanlines=args.scanlines, muted=args.mute)

    if args.rom:
        if os.path.exists(args.rom):
            app.load_rom(args.rom)
        else:
            logger.error("ROM not found: %s", args.rom)

    app.run()


if __name__ == "__main__":
    main()
