#!/usr/bin/env python3
"""
Cat's Chip-8 Emulator - CPU core

Machine state and instruction engine for the original CHIP-8 instruction set
(all 35 opcodes). The engine has no GUI dependencies; the Tkinter frontend in
chip8_emulator.py drives it.

Python: 3.9+
"""

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION & CONSTANTS
# ============================================================================

@dataclass
class EmulatorConfig:
    """Emulator configuration settings"""
    # Memory
    memory_size: int = 4096
    program_start: int = 0x200
    font_start: int = 0x000

    # Display
    display_width: int = 64
    display_height: int = 32

    # Timing
    cpu_frequency: int = 500      # Instructions per second
    timer_frequency: int = 60     # Timer decrement rate (Hz)
    target_fps: int = 60

    # Stack
    stack_size: int = 16

    # Registers
    num_registers: int = 16
    num_keys: int = 16

    @property
    def max_rom_size(self) -> int:
        return self.memory_size - self.program_start


ADDRESS_MASK = 0xFFF
VF = 0xF

# Standard 4x5 font (0-F) - 80 bytes at the font base
FONT_4X5 = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])
FONT_GLYPH_SIZE = 5

# ============================================================================
# ERRORS
# ============================================================================

class Chip8Error(Exception):
    """Base for errors raised by the CHIP-8 core."""


class RomLoadError(Chip8Error):
    """Program image could not be read."""


class RomTooLargeError(RomLoadError):
    def __init__(self, size: int, max_size: int):
        self.size = size
        self.max_size = max_size
        super().__init__(f"ROM too large: {size} bytes (max {max_size})")


class StackError(Chip8Error):
    pass


class StackOverflowError(StackError):
    pass


class StackUnderflowError(StackError):
    pass


class ProgramCounterError(Chip8Error):
    """Fetch from an odd address or from outside program memory."""

    def __init__(self, pc: int):
        self.pc = pc
        super().__init__(f"Invalid program counter: {pc:#05x}")

# ============================================================================
# MACHINE STATE
# ============================================================================

class Chip8State:
    """
    Memory, registers, stack, timers, framebuffer and key latch.

    Only ``reset()`` mutates the state here; every instruction lives in
    Chip8CPU. The framebuffer is a flat row-major bytearray indexed
    ``y * width + x``.
    """

    def __init__(self, config: Optional[EmulatorConfig] = None):
        self.config = config or EmulatorConfig()
        self.reset()

    def reset(self):
        """Reset to initial power-on state"""
        cfg = self.config

        # Main memory (4KB) with the hex font in low memory
        self.memory = bytearray(cfg.memory_size)
        self.memory[cfg.font_start:cfg.font_start + len(FONT_4X5)] = FONT_4X5

        # 16 general-purpose 8-bit registers V0-VF
        self.v: List[int] = [0] * cfg.num_registers

        # Index register and program counter
        self.i = 0
        self.pc = cfg.program_start

        # Stack (16 levels of return addresses)
        self.stack: List[int] = [0] * cfg.stack_size
        self.sp = 0

        # Timers (decrement once per timer tick when non-zero)
        self.delay_timer = 0
        self.sound_timer = 0

        # Display buffer, 1 byte per pixel
        self.display = bytearray(cfg.display_width * cfg.display_height)
        self.draw_flag = False

        # Input state (16 keys)
        self.keys: List[bool] = [False] * cfg.num_keys

    def copy(self) -> "Chip8State":
        """Independent snapshot for comparisons"""
        other = Chip8State.__new__(Chip8State)
        other.config = self.config
        other.memory = bytearray(self.memory)
        other.v = list(self.v)
        other.i = self.i
        other.pc = self.pc
        other.stack = list(self.stack)
        other.sp = self.sp
        other.delay_timer = self.delay_timer
        other.sound_timer = self.sound_timer
        other.display = bytearray(self.display)
        other.draw_flag = self.draw_flag
        other.keys = list(self.keys)
        return other

    def __eq__(self, other):
        if not isinstance(other, Chip8State):
            return NotImplemented
        return (self.memory == other.memory and self.v == other.v
                and self.i == other.i and self.pc == other.pc
                and self.stack == other.stack and self.sp == other.sp
                and self.delay_timer == other.delay_timer
                and self.sound_timer == other.sound_timer
                and self.display == other.display
                and self.draw_flag == other.draw_flag
                and self.keys == other.keys)

    def pixel(self, x: int, y: int) -> int:
        """Framebuffer cell at (x, y), coordinates wrapped to the screen"""
        cfg = self.config
        return self.display[(y % cfg.display_height) * cfg.display_width
                            + (x % cfg.display_width)]

# ============================================================================
# TIMING
# ============================================================================

class TimerClock:
    """
    Converts wall-clock time into 60 Hz timer ticks.

    The cadence driver calls ``ticks()`` before every ``Chip8CPU.step`` and
    passes the result along, so the timers count down at the timer frequency
    no matter how fast instructions run.
    """

    def __init__(self, frequency: int = 60,
                 clock: Callable[[], float] = time.monotonic):
        self.period = 1.0 / frequency
        self._clock = clock
        self._last = clock()

    def restart(self):
        self._last = self._clock()

    def ticks(self) -> int:
        now = self._clock()
        elapsed = int((now - self._last) / self.period)
        if elapsed > 0:
            self._last += elapsed * self.period
        return elapsed

# ============================================================================
# CHIP-8 CPU
# ============================================================================

class Chip8CPU:
    """
    CHIP-8 instruction engine.

    Fetches, decodes and executes one instruction per ``step()`` against a
    Chip8State, then runs the timer-decrement step. Register VF receives the
    carry/borrow/shift-out/collision flag of 8XY4-8XYE, FX1E and DXYN; the
    flag is written after the operands are read, so forms using VF as X or Y
    end with the flag in VF.
    """

    def __init__(self, config: Optional[EmulatorConfig] = None,
                 state: Optional[Chip8State] = None,
                 rng: Optional[random.Random] = None):
        self.config = config or (state.config if state else EmulatorConfig())
        self.state = state or Chip8State(self.config)
        self.rng = rng or random.Random()

        # Audio collaborator hook, called once per tone request
        self.on_tone: Optional[Callable[[], None]] = None

        self._reset_flags()

        # ROM info
        self.rom_loaded = False
        self.rom_name = ""
        self.rom_data = b""

    def _reset_flags(self):
        self.halted = False              # Fatal error until reset
        self.waiting_for_key = False     # FX0A polling
        self.tone_requested = False
        self.unknown_opcodes = 0
        self.cycles = 0

    def reset(self):
        """Reset CPU to initial power-on state"""
        self.state.reset()
        self._reset_flags()

    def load_rom(self, data: bytes, name: str = ""):
        """Load ROM into memory starting at 0x200"""
        self.reset()
        self.rom_loaded = False

        max_size = self.config.max_rom_size
        if len(data) > max_size:
            raise RomTooLargeError(len(data), max_size)

        start = self.config.program_start
        self.state.memory[start:start + len(data)] = data

        self.rom_loaded = True
        self.rom_name = name or "Unknown"
        self.rom_data = bytes(data)
        logger.debug("Loaded ROM %s (%d bytes)", self.rom_name, len(data))

    def load_rom_file(self, path: str):
        """Read a raw program image from disk and load it"""
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except OSError as e:
            self.reset()
            self.rom_loaded = False
            raise RomLoadError(f"Failed to read ROM {path}: {e}") from e
        self.load_rom(data, os.path.basename(path))

    def set_key(self, key: int, pressed: bool):
        """Key latch write from an input collaborator"""
        self.state.keys[key & 0xF] = pressed

    # ==================== CYCLE ====================

    def step(self, timer_ticks: int = 1) -> bool:
        """
        Execute one instruction, then ``timer_ticks`` timer decrements.

        The default of one decrement per instruction matches the classic
        interpreter loop; pass the tick count from a TimerClock for 60 Hz
        timers. Returns the framebuffer dirty flag. Stack and program counter
        faults halt the CPU and are re-raised.
        """
        if self.halted:
            return False

        self.tone_requested = False
        try:
            opcode = self._fetch()
            self._execute(opcode)
        except Chip8Error:
            self.halted = True
            raise

        self.cycles += 1
        self.tick_timers(timer_ticks)
        return self.state.draw_flag

    def tick_timers(self, ticks: int = 1):
        """Decrement delay and sound timers once per tick, clamped at zero"""
        s = self.state
        # Both timers are 8-bit, anything past 256 ticks is a no-op
        for _ in range(min(ticks, 0x100)):
            if s.delay_timer > 0:
                s.delay_timer -= 1
            if s.sound_timer > 0:
                if s.sound_timer == 1:
                    self._request_tone()
                s.sound_timer -= 1

    def _request_tone(self):
        self.tone_requested = True
        logger.debug("Sound timer expired, tone requested")
        if self.on_tone:
            self.on_tone()

    def _fetch(self) -> int:
        s = self.state
        pc = s.pc
        if pc & 1 or not (self.config.program_start <= pc <= self.config.memory_size - 2):
            raise ProgramCounterError(pc)
        # Big-endian 16-bit opcode
        return (s.memory[pc] << 8) | s.memory[pc + 1]

    def _addr(self, offset: int = 0) -> int:
        """I + offset wrapped to 12 bits"""
        return (self.state.i + offset) & ADDRESS_MASK

    def _unknown(self, opcode: int):
        self.unknown_opcodes += 1
        logger.warning("Unknown opcode %04X at %03X", opcode, self.state.pc)
        self.state.pc += 2

    # ==================== DECODE / EXECUTE ====================

    def _execute(self, opcode: int):
        """Decode and execute a single opcode"""
        s = self.state
        v = s.v

        # Extract common fields
        nnn = opcode & 0x0FFF           # 12-bit address
        nn = opcode & 0x00FF            # 8-bit constant
        n = opcode & 0x000F             # 4-bit constant
        x = (opcode >> 8) & 0x0F        # Register X index
        y = (opcode >> 4) & 0x0F        # Register Y index

        # First nibble determines instruction class
        op = opcode >> 12

        if op == 0x0:
            if opcode == 0x00E0:
                self._cls()
            elif opcode == 0x00EE:
                self._ret()
            else:
                # 0NNN machine-code calls are not emulated
                self._unknown(opcode)

        elif op == 0x1:
            # 1NNN: JP addr
            s.pc = nnn

        elif op == 0x2:
            # 2NNN: CALL addr
            self._call(nnn)

        elif op == 0x3:
            # 3XNN: SE Vx, byte
            s.pc += 4 if v[x] == nn else 2

        elif op == 0x4:
            # 4XNN: SNE Vx, byte
            s.pc += 4 if v[x] != nn else 2

        elif op == 0x5:
            # 5XY0: SE Vx, Vy
            s.pc += 4 if v[x] == v[y] else 2

        elif op == 0x6:
            # 6XNN: LD Vx, byte
            v[x] = nn
            s.pc += 2

        elif op == 0x7:
            # 7XNN: ADD Vx, byte (no carry flag)
            v[x] = (v[x] + nn) & 0xFF
            s.pc += 2

        elif op == 0x8:
            self._execute_8xxx(opcode, x, y, n)

        elif op == 0x9:
            # 9XY0: SNE Vx, Vy
            s.pc += 4 if v[x] != v[y] else 2

        elif op == 0xA:
            # ANNN: LD I, addr
            s.i = nnn
            s.pc += 2

        elif op == 0xB:
            # BNNN: JP V0, addr
            s.pc = (nnn + v[0]) & ADDRESS_MASK

        elif op == 0xC:
            # CXNN: RND Vx, byte
            v[x] = self.rng.randint(0, 255) & nn
            s.pc += 2

        elif op == 0xD:
            # DXYN: DRW Vx, Vy, nibble
            self._draw(x, y, n)
            s.pc += 2

        elif op == 0xE:
            pressed = s.keys[v[x] & 0xF]
            if nn == 0x9E:
                # EX9E: SKP Vx
                s.pc += 4 if pressed else 2
            elif nn == 0xA1:
                # EXA1: SKNP Vx
                s.pc += 4 if not pressed else 2
            else:
                self._unknown(opcode)

        else:
            self._execute_fxxx(opcode, x, nn)

    def _execute_8xxx(self, opcode: int, x: int, y: int, n: int):
        """Execute 8XYN arithmetic/logic opcodes"""
        v = self.state.v
        vx, vy = v[x], v[y]

        if n == 0x0:
            # 8XY0: LD Vx, Vy
            v[x] = vy
        elif n == 0x1:
            # 8XY1: OR Vx, Vy
            v[x] = vx | vy
        elif n == 0x2:
            # 8XY2: AND Vx, Vy
            v[x] = vx & vy
        elif n == 0x3:
            # 8XY3: XOR Vx, Vy
            v[x] = vx ^ vy
        elif n == 0x4:
            # 8XY4: ADD Vx, Vy - VF = carry
            result = vx + vy
            v[x] = result & 0xFF
            v[VF] = 1 if result > 0xFF else 0
        elif n == 0x5:
            # 8XY5: SUB Vx, Vy - VF = NOT borrow
            v[x] = (vx - vy) & 0xFF
            v[VF] = 0 if vy > vx else 1
        elif n == 0x6:
            # 8XY6: SHR Vx - VF = bit shifted out
            v[x] = vx >> 1
            v[VF] = vx & 0x01
        elif n == 0x7:
            # 8XY7: SUBN Vx, Vy - VF = NOT borrow
            v[x] = (vy - vx) & 0xFF
            v[VF] = 0 if vx > vy else 1
        elif n == 0xE:
            # 8XYE: SHL Vx - VF = bit shifted out
            v[x] = (vx << 1) & 0xFF
            v[VF] = (vx >> 7) & 0x01
        else:
            self._unknown(opcode)
            return

        self.state.pc += 2

    def _execute_fxxx(self, opcode: int, x: int, nn: int):
        """Execute FXNN opcodes"""
        s = self.state
        v = s.v

        if nn == 0x07:
            # FX07: LD Vx, DT
            v[x] = s.delay_timer

        elif nn == 0x0A:
            # FX0A: LD Vx, K - re-executed every step until a key is down
            key = self._pressed_key()
            if key is None:
                self.waiting_for_key = True
                return
            self.waiting_for_key = False
            v[x] = key

        elif nn == 0x15:
            # FX15: LD DT, Vx
            s.delay_timer = v[x]

        elif nn == 0x18:
            # FX18: LD ST, Vx
            s.sound_timer = v[x]

        elif nn == 0x1E:
            # FX1E: ADD I, Vx - VF = overflow past 0xFFF
            result = s.i + v[x]
            s.i = result & 0xFFFF
            v[VF] = 1 if result > ADDRESS_MASK else 0

        elif nn == 0x29:
            # FX29: LD F, Vx
            s.i = (self.config.font_start + v[x] * FONT_GLYPH_SIZE) & ADDRESS_MASK

        elif nn == 0x33:
            # FX33: LD B, Vx
            value = v[x]
            s.memory[self._addr(0)] = value // 100
            s.memory[self._addr(1)] = (value // 10) % 10
            s.memory[self._addr(2)] = value % 10

        elif nn == 0x55:
            # FX55: LD [I], Vx - I is left as is
            for idx in range(x + 1):
                s.memory[self._addr(idx)] = v[idx]

        elif nn == 0x65:
            # FX65: LD Vx, [I]
            for idx in range(x + 1):
                v[idx] = s.memory[self._addr(idx)]

        else:
            self._unknown(opcode)
            return

        s.pc += 2

    def _pressed_key(self) -> Optional[int]:
        # Highest index wins when several keys are down
        for key in range(len(self.state.keys) - 1, -1, -1):
            if self.state.keys[key]:
                return key
        return None

    # ==================== DISPLAY OPERATIONS ====================

    def _cls(self):
        """00E0: Clear display"""
        s = self.state
        s.display[:] = bytes(len(s.display))
        s.draw_flag = True
        s.pc += 2

    def _draw(self, x: int, y: int, n: int):
        """
        DXYN: Draw sprite at (Vx, Vy) with height N

        Sprites are XORed onto the display. Each pixel coordinate wraps around
        the screen edges independently. VF is set to 1 if any pixel is erased.
        """
        s = self.state
        width = self.config.display_width
        height = self.config.display_height
        vx = s.v[x]
        vy = s.v[y]
        collision = 0

        for row in range(n):
            sprite_byte = s.memory[self._addr(row)]
            py = (vy + row) % height

            for col in range(8):
                if sprite_byte & (0x80 >> col):
                    px = (vx + col) % width
                    index = py * width + px
                    if s.display[index]:
                        collision = 1
                    s.display[index] ^= 1

        s.v[VF] = collision
        s.draw_flag = True

    # ==================== STACK OPERATIONS ====================

    def _call(self, nnn: int):
        """2NNN: Call subroutine"""
        s = self.state
        if s.sp >= len(s.stack):
            raise StackOverflowError(
                f"Stack overflow calling {nnn:#05x} from {s.pc:#05x}")
        s.stack[s.sp] = s.pc
        s.sp += 1
        s.pc = nnn

    def _ret(self):
        """00EE: Return from subroutine"""
        s = self.state
        if s.sp == 0:
            raise StackUnderflowError(f"Return with empty stack at {s.pc:#05x}")
        s.sp -= 1
        s.pc = s.stack[s.sp] + 2
