# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COWGOD'S TECHNICAL REFERENCE
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# This module is the machine only: memory, registers, timers, framebuffer,
# keypad latch and the fetch/decode/execute engine. Windows, keyboards and
# event loops live in the host modules (chip8_pygame, chip8_async).


import logging
import os
import random
from collections import namedtuple
from enum import Enum
from functools import wraps


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

FONT_START_ADDRESS = 0x000
FONT_GLYPH_SIZE = 5
FONT_END_ADDRESS = FONT_START_ADDRESS + len(C8_FONTS)
MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 16
KEY_COUNT = 16
INSTRUCTION_WIDTH = 2
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False

# which bits of an opcode select its handler, by leading nibble
# classes not listed here are identified by the leading nibble alone
OPCODE_MASKS = {
    0x0: 0xFFFF,
    0x5: 0xF00F,
    0x8: 0xF00F,
    0x9: 0xF00F,
    0xE: 0xF0FF,
    0xF: 0xF0FF,
}
DEFAULT_OPCODE_MASK = 0xF000


# ******************** ERRORS SECTION
class RomTooLargeError(ValueError):
    pass


class StackError(IndexError):
    pass


class MemoryAccessError(IndexError):
    pass


# ******************** DECODING SECTION
Instruction = namedtuple("Instruction", "opcode op x y n kk nnn")

def decode(opcode):
    """
    split a 16 bit instruction word into its fields:
    op (leading nibble), x (bits 8-11), y (bits 4-7), n (last nibble),
    kk (last byte) and nnn (last 12 bits)
    """
    opcode &= 0xFFFF
    return Instruction(
        opcode=opcode,
        op=(opcode & 0xF000) >> 12,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=opcode & 0x000F,
        kk=opcode & 0x00FF,
        nnn=opcode & 0x0FFF,
    )


# ********** WHAT THE ENGINE DOES TO THE PROGRAM COUNTER ONCE A HANDLER RETURNS
class Step(Enum):
    REPEAT = 0                          # run the same instruction again next cycle
    NEXT = INSTRUCTION_WIDTH
    SKIP = 2 * INSTRUCTION_WIDTH

Jump = namedtuple("Jump", "address")

def skip_if(condition):
    return Step.SKIP if condition else Step.NEXT


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to log the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(self, ins):
            if log.isEnabledFor(logging.DEBUG):
                fields = ins._asdict()
                fields['mem_addr'] = self.pc
                log.debug(("mem_addr: 0x{mem_addr:04x}    instruction: " + msg).format(**fields))
            return fn(self, ins)
        return wrapper_fn
    return decorator

def load_rom_file(path):
    """read a ROM image from disk, an unreadable path raises OSError"""
    with open(path, mode='rb') as f:
        return f.read()


# ******************** MEMORY SECTION
# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self, size=MEMORY_SIZE):
        self.inner = bytearray(size)
        self.inner[FONT_START_ADDRESS:FONT_END_ADDRESS] = bytes(C8_FONTS)

    def __len__(self):
        return len(self.inner)

    def _bounds(self, index):
        if isinstance(index, slice):
            if index.step not in (None, 1):
                raise ValueError("Memory slices cannot have a step")
            start = 0 if index.start is None else index.start
            stop = len(self.inner) if index.stop is None else index.stop
        else:
            start, stop = index, index + 1
        if start < 0 or stop > len(self.inner) or start > stop:
            raise MemoryAccessError(
                f"Memory access 0x{start:04x}..0x{stop:04x} is outside of the {len(self.inner)} bytes available"
            )
        return start, stop

    def __getitem__(self, index):
        start, stop = self._bounds(index)
        if isinstance(index, slice):
            return bytes(self.inner[start:stop])
        return self.inner[start]

    def __setitem__(self, key, value):
        start, stop = self._bounds(key)
        if start < FONT_END_ADDRESS and stop > FONT_START_ADDRESS:
            raise MemoryAccessError(f"Memory at 0x{start:04x} belongs to the font and cannot be written")
        if isinstance(key, slice):
            value = bytes(value)
            if len(value) != stop - start:
                raise ValueError("Memory slices cannot be resized")
            self.inner[start:stop] = value
        else:
            self.inner[start] = value & 0xFF

    def load_rom(self, rom):
        """copy the ROM bytes at ROM_START_ADDRESS, raise an exception if they do not fit"""
        rom = bytes(rom)
        if len(rom) > MAX_ROM_SIZE:
            raise RomTooLargeError(
                f"The ROM is {len(rom)} bytes long but at most {MAX_ROM_SIZE} bytes fit in memory"
            )
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom
        log.info(f"{len(rom)} bytes of ROM have been loaded at 0x{ROM_START_ADDRESS:04x}")


# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self):
        self.addr_list = []

    def __len__(self):
        return len(self.addr_list)

    def __repr__(self):
        return "[" + ", ".join(f"0x{a:04x}" for a in self.addr_list) + "]"

    @property
    def size(self):
        return len(self)

    def append(self, address):
        if self.size >= STACK_SIZE:
            raise StackError(f"The CHIP-8 stack can contain at most {STACK_SIZE} addresses. Limit exceeded")
        self.addr_list.append(address)

    def pop(self):
        if self.size == 0:
            raise StackError("Tried to return from a subroutine with an empty stack")
        return self.addr_list.pop()


# ******************** I/O SECTION
class Framebuffer:
    """64x32 grid of single bit pixels, written by XOR only (clear aside)"""

    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.pixels = [[0] * w for _ in range(h)]

    def __getitem__(self, xy):
        x, y = xy
        return self.pixels[y][x]

    def clear(self):
        for row in self.pixels:
            row[:] = [0] * self.w

    def xor_pixel(self, x, y):
        """flip the pixel at (x, y) with wrap around, return True if it was turned off"""
        row = self.pixels[y % self.h]
        x %= self.w
        row[x] ^= 1
        return row[x] == 0

    def rows(self):
        return [list(row) for row in self.pixels]

    def flat(self):
        """row-major copy of the whole grid"""
        return [p for row in self.pixels for p in row]

    def is_blank(self):
        return not any(any(row) for row in self.pixels)


class Keypad:
    """snapshot of the 16 keys, replaced as a whole at every cycle"""

    def __init__(self):
        self.states = [False] * KEY_COUNT

    def __getitem__(self, key):
        # V registers hold a byte, anything past key F is never pressed
        if 0 <= key < KEY_COUNT:
            return self.states[key]
        return False

    def update(self, keys):
        keys = list(keys)
        if len(keys) != KEY_COUNT:
            raise ValueError(f"The keypad needs {KEY_COUNT} key states, got {len(keys)}")
        self.states = [bool(k) for k in keys]

    def first(self):
        """consume and return the lowest pressed key, None if nothing is pressed"""
        for key, pressed in enumerate(self.states):
            if pressed:
                self.states[key] = False
                return key
        return None


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rom=None, rng=None):
        self.mem = Memory()
        self.stack = Stack()
        self.screen = Framebuffer()
        self.keypad = Keypad()
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.draw = False
        self.rng = rng if rng is not None else random.Random()
        self.instructions = {
            0x00E0: self._clear_screen,
            0x00EE: self._return,
            0x1000: self._jump,
            0x2000: self._call_addr,
            0x3000: self._skip_if_eq,
            0x4000: self._skip_if_not_eq,
            0x5000: self._skip_if_eq_regs,
            0x6000: self._set_vk,
            0x7000: self._add_to_vk,
            0x8000: self._set_vx_to_vy,
            0x8001: self._set_vx_or_vy,
            0x8002: self._set_vx_and_vy,
            0x8003: self._set_vx_xor_vy,
            0x8004: self._add_vx_vy,
            0x8005: self._sub_vx_vy,
            0x8006: self._shr,
            0x8007: self._subn_vx_vy,
            0x800E: self._shl,
            0x9000: self._skip_if_not_eq_regs,
            0xA000: self._set_idx,
            0xB000: self._jump_plus,
            0xC000: self._random_byte_and,
            0xD000: self._to_screen,
            0xE09E: self._skip_if_pressed,
            0xE0A1: self._skip_if_not_pressed,
            0xF007: self._set_vx_dt,
            0xF00A: self._wait_keypress,
            0xF015: self._set_dt_vx,
            0xF018: self._set_st,
            0xF01E: self._add_to_idx,
            0xF029: self._select_char,
            0xF033: self._bcd_repr,
            0xF055: self._store_vregs,
            0xF065: self._load_vregs,
        }
        if rom is not None:
            self.mem.load_rom(rom)

    @classmethod
    def from_file(cls, path, rng=None):
        chip = cls(load_rom_file(path), rng=rng)
        log.info(f"The ROM at path {path} has been loaded successfully")
        return chip

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        timers = f"DELAY_TIMER:{self.dt} | SOUND_TIMER:{self.st}"
        stack = f"STACK:{self.stack}"
        flags = f"DRAW: {self.draw}"
        return f"{registers}\n{timers}\n{stack}\n{flags}"

    @property
    def sound_active(self):
        """True while the sound timer runs, i.e. while a host should beep"""
        return self.st > 0

    # ********** READ-ONLY VIEWS OF THE MACHINE STATE FOR HOSTS
    @property
    def i(self):
        return self.idx

    @property
    def sp(self):
        return len(self.stack)

    @property
    def v(self):
        return tuple(self.v_regs)

    @property
    def delay_timer(self):
        return self.dt

    @property
    def sound_timer(self):
        return self.st

    @property
    def memory(self):
        return self.mem

    @property
    def framebuffer(self):
        return self.screen

    @property
    def draw_flag(self):
        """True when the last cycle cleared or drew on the screen"""
        return self.draw

    def load_rom(self, rom):
        self.mem.load_rom(rom)

    # ********** CONTROL FLOW
    @asm("CLS")
    def _clear_screen(self, ins):
        self.screen.clear()
        self.draw = True
        return Step.NEXT

    @asm("RET")
    def _return(self, ins):
        """return from a subroutine"""
        return Jump(self.stack.pop())

    @asm("JP 0x{nnn:04x}")
    def _jump(self, ins):
        return Jump(ins.nnn)

    @asm("CALL 0x{nnn:04x}")
    def _call_addr(self, ins):
        # the return address is the instruction after the call
        self.stack.append(self.pc + INSTRUCTION_WIDTH)
        return Jump(ins.nnn)

    @asm("JP V0, 0x{nnn:04x}")
    def _jump_plus(self, ins):
        return Jump(ins.nnn + self.v_regs[0x0])

    @asm("SE V{x}, {kk}")
    def _skip_if_eq(self, ins):
        return skip_if(self.v_regs[ins.x] == ins.kk)

    @asm("SNE V{x}, {kk}")
    def _skip_if_not_eq(self, ins):
        return skip_if(self.v_regs[ins.x] != ins.kk)

    @asm("SE V{x}, V{y}")
    def _skip_if_eq_regs(self, ins):
        return skip_if(self.v_regs[ins.x] == self.v_regs[ins.y])

    @asm("SNE V{x}, V{y}")
    def _skip_if_not_eq_regs(self, ins):
        return skip_if(self.v_regs[ins.x] != self.v_regs[ins.y])

    # ********** LOADS AND ARITHMETIC
    # VF doubles as the carry/borrow/shift-out flag: it is written after
    # the result so the flag wins when x is F
    @asm("LD V{x}, {kk}")
    def _set_vk(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.kk
        return Step.NEXT

    @asm("ADD V{x}, {kk}")
    def _add_to_vk(self, ins):
        """add kk to Vx, no carry flag"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.kk) & 0xFF
        return Step.NEXT

    @asm("LD V{x}, V{y}")
    def _set_vx_to_vy(self, ins):
        self.v_regs[ins.x] = self.v_regs[ins.y]
        return Step.NEXT

    @asm("OR V{x}, V{y}")
    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]
        return Step.NEXT

    @asm("AND V{x}, V{y}")
    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]
        return Step.NEXT

    @asm("XOR V{x}, V{y}")
    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]
        return Step.NEXT

    @asm("ADD V{x}, V{y}")
    def _add_vx_vy(self, ins):
        """set Vx = Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[ins.x] = total & 0xFF
        self.v_regs[0xF] = 1 if total > 0xFF else 0
        return Step.NEXT

    @asm("SUB V{x}, V{y}")
    def _sub_vx_vy(self, ins):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self.v_regs[0xF] = 1 if vx > vy else 0
        return Step.NEXT

    @asm("SHR V{x}")
    def _shr(self, ins):
        """set Vx = Vx SHR 1, VF = the bit shifted out"""
        vx = self.v_regs[ins.x]
        self.v_regs[ins.x] = vx >> 1
        self.v_regs[0xF] = vx & 0x1
        return Step.NEXT

    @asm("SUBN V{x}, V{y}")
    def _subn_vx_vy(self, ins):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self.v_regs[0xF] = 1 if vy > vx else 0
        return Step.NEXT

    @asm("SHL V{x}")
    def _shl(self, ins):
        """set Vx = Vx SHL 1, VF = the bit shifted out"""
        vx = self.v_regs[ins.x]
        self.v_regs[ins.x] = (vx << 1) & 0xFF
        self.v_regs[0xF] = (vx & 0x80) >> 7
        return Step.NEXT

    @asm("RND V{x}, 0x{kk:02x}")
    def _random_byte_and(self, ins):
        self.v_regs[ins.x] = self.rng.randint(0, 255) & ins.kk
        return Step.NEXT

    # ********** INDEX REGISTER AND MEMORY
    @asm("LD I, 0x{nnn:04x}")
    def _set_idx(self, ins):
        self.idx = ins.nnn
        return Step.NEXT

    @asm("ADD I, V{x}")
    def _add_to_idx(self, ins):
        """set I = I + Vx, VF is left alone"""
        self.idx = (self.idx + self.v_regs[ins.x]) & 0xFFFF
        return Step.NEXT

    @asm("LD F, V{x}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_START_ADDRESS + self.v_regs[ins.x] * FONT_GLYPH_SIZE
        return Step.NEXT

    @asm("LD B, V{x}")
    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx at I, the tens digit at I+1, the ones digit at I+2"""
        value = self.v_regs[ins.x]
        self.mem[self.idx:self.idx+3] = [value // 100, value // 10 % 10, value % 10]
        return Step.NEXT

    @asm("LD [I], V{x}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        self.mem[self.idx:self.idx+ins.x+1] = self.v_regs[:ins.x+1]
        return Step.NEXT

    @asm("LD V{x}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        self.v_regs[:ins.x+1] = list(self.mem[self.idx:self.idx+ins.x+1])
        return Step.NEXT

    # ********** TIMERS
    @asm("LD V{x}, DT")
    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.dt
        return Step.NEXT

    @asm("LD DT, V{x}")
    def _set_dt_vx(self, ins):
        self.dt = self.v_regs[ins.x]
        return Step.NEXT

    @asm("LD ST, V{x}")
    def _set_st(self, ins):
        self.st = self.v_regs[ins.x]
        return Step.NEXT

    # ********** DISPLAY
    @asm("DRW V{x}, V{y}, {n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x = self.v_regs[ins.x] % self.screen.w
        y = self.v_regs[ins.y] % self.screen.h
        sprite = self.mem[self.idx:self.idx+ins.n]
        collision = False
        for row, sprite_byte in enumerate(sprite):
            for col in range(8):
                if sprite_byte & (0x80 >> col):
                    # sprites are XORed onto the screen, erasing a lit pixel is a collision
                    collision |= self.screen.xor_pixel(x + col, y + row)
        self.v_regs[0xF] = 1 if collision else 0
        self.draw = True
        return Step.NEXT

    # ********** INPUT
    @asm("SKP V{x}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        return skip_if(self.keypad[self.v_regs[ins.x]])

    @asm("SKNP V{x}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        return skip_if(not self.keypad[self.v_regs[ins.x]])

    @asm("LD V{x}, K")
    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx"""
        key = self.keypad.first()
        if key is None:
            return Step.REPEAT      # stay on the same instruction until a key is pressed
        self.v_regs[ins.x] = key
        return Step.NEXT

    # ********** ENGINE
    def lookup(self, opcode):
        """return the handler for an opcode, None if no instruction matches"""
        mask = OPCODE_MASKS.get((opcode & 0xF000) >> 12, DEFAULT_OPCODE_MASK)
        return self.instructions.get(opcode & mask)

    def fetch(self):
        # each instruction is two bytes long, high byte first
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def tick_timers(self):
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    def cycle(self, keys=None):
        """
        emulate one machine cycle: latch keys, update timers, fetch, decode, execute
        keys is a sequence of 16 booleans replacing the previous keypad state,
        None leaves the keypad as it is
        """
        self.draw = False
        if keys is not None:
            self.keypad.update(keys)
        self.tick_timers()
        ins = decode(self.fetch())
        instruction = self.lookup(ins.opcode)
        if instruction is None:
            log.debug(f"mem_addr: 0x{self.pc:04x}    unknown opcode 0x{ins.opcode:04x}, skipped")
            step = Step.NEXT
        else:
            step = instruction(ins)
        if isinstance(step, Jump):
            self.pc = step.address
        else:
            self.pc += step.value
        return ins
