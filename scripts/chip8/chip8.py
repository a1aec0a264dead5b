# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite
#
# This module only holds the virtual machine: no window, no audio device and no
# keyboard handling. Those live in chip8_pygame.py and talk to the machine through
# load_program / cycle / key_pressed / key_released / draw_complete and an
# optional audio object exposing start() and stop().


import os
import random
from enum import Enum
from functools import wraps


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
FONT_HEIGHT = 5
MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 16
REGISTERS_COUNT = 16
KEYS_COUNT = 16
TIMER_DIVIDER = 4       # instruction cycles between two timer decrements
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


class State(Enum):
    RUNNING = "running"
    HALTED = "halted"
    AWAITING_KEY = "awaiting_key"


# ******************** ERRORS SECTION
class CrashReport:
    """snapshot of the machine taken when a fatal fault is raised"""
    def __init__(self, opcode, pc, idx, registers, stack):
        self.opcode = opcode
        self.pc = pc
        self.idx = idx
        self.registers = list(registers)
        self.stack = list(stack)

    def __repr__(self):
        return f"CrashReport(opcode=0x{self.opcode:04X}, pc=0x{self.pc:04X})"

    def __str__(self):
        stack = ", ".join(f"0x{addr:04X}" for addr in self.stack)
        registers = ", ".join(f"0x{value:02X}" for value in self.registers)
        return (f"Opcode: 0x{self.opcode:04X}\n"
                f"Stack: [{stack}]\n"
                f"Current address: 0x{self.pc:04X}\n"
                f"Index selector: 0x{self.idx:04X}\n"
                f"Registers: [{registers}]")


class Chip8Error(Exception):
    """base class of every error raised by the virtual machine"""
    def __init__(self, message, report=None):
        super().__init__(message)
        self.message = message
        self.report = report

    def __str__(self):
        if self.report is None:
            return self.message
        return ("-----------CRASH INFO-----------\n"
                f"ERROR {self.message}\n"
                "--------------DATA--------------\n"
                f"{self.report}\n"
                "---------END CRASH INFO---------")

class InvalidOpcodeError(Chip8Error):
    pass

class StackOverflowError(Chip8Error):
    pass

class StackUnderflowError(Chip8Error):
    pass

class MemoryAccessError(Chip8Error):
    pass

class ProgramTooLargeError(Chip8Error):
    pass


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].pc - 0x2     # args[0] equals self, pc already points to the next instruction
            vals = fn(*args, **kwargs)      # use the locals() values of each decorated function in the print
            vals['mem_addr'] = mem_addr
            if DEBUG: print(msg.format(**vals))
        return wrapper_fn
    return decorator


# ******************** I/O SECTION
class Display:
    """monochrome frame buffer, the renderer reads buffer/dirty and calls acknowledge() once done"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * h * w
        self.dirty = False

    def __getitem__(self, position):
        x, y = position
        return self.buffer[y * self.w + x]

    def rows(self):
        for y in range(self.h):
            yield self.buffer[y * self.w:(y + 1) * self.w]

    def clear(self):
        self.buffer = [False] * self.h * self.w
        self.dirty = True

    def blit(self, x, y, sprite):
        """
        XOR every sprite byte onto the buffer starting at (x, y), one byte per row
        pixels falling outside the screen are dropped, nothing wraps around
        return True if at least one pixel that was ON got erased
        """
        collision = False
        for i, sprite_byte in enumerate(sprite):
            y_coordinate = y + i
            if y_coordinate >= self.h:
                break
            for j in range(8):
                x_coordinate = x + j
                if x_coordinate >= self.w:
                    break
                if not (sprite_byte >> (7 - j)) & 0x1:
                    continue
                position = y_coordinate * self.w + x_coordinate
                if self.buffer[position]:
                    collision = True
                self.buffer[position] = not self.buffer[position]
        self.dirty = True
        return collision

    def acknowledge(self):
        self.dirty = False


class Timers:
    """delay and sound timers, decremented once every `divider` cycles"""
    def __init__(self, divider=TIMER_DIVIDER, audio=None):
        if divider < 1:
            raise ValueError(f"The timer divider must be a positive number, got {divider}")
        self.divider = divider
        self.countdown = divider
        self.delay = 0
        self.sound = 0
        self.audio = audio
        self.sound_on = False

    def set_sound(self, value):
        self.sound = value
        if value:
            self._start_audio()
        else:
            self._stop_audio()

    def tick(self):
        self.countdown -= 1
        if self.countdown > 0:
            return
        self.countdown = self.divider
        if self.delay > 0:
            self.delay -= 1
        if self.sound == 1:
            self._stop_audio()      # only the 1 -> 0 transition silences the tone
        if self.sound > 0:
            self.sound -= 1

    def _start_audio(self):
        self.sound_on = True
        if self.audio is not None:
            self.audio.start()

    def _stop_audio(self):
        self.sound_on = False
        if self.audio is not None:
            self.audio.stop()


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self, capacity=STACK_SIZE):
        self.addr_list = []
        self.capacity = capacity

    def __len__(self):
        return len(self.addr_list)

    def __iter__(self):
        return iter(self.addr_list)

    def __repr__(self):
        return f"Stack({[hex(addr) for addr in self.addr_list]})"

    def full(self):
        return len(self.addr_list) >= self.capacity

    def append(self, address):
        if self.full():
            raise IndexError(f"The CHIP-8 stack can contain at most {self.capacity} addresses. Limit exceeded")
        self.addr_list.append(address)

    def pop(self):
        return self.addr_list.pop()

# ********** WRAPS A LIST TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = [0] * MEMORY_SIZE
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = C8_FONTS

    def __len__(self):
        return len(self.inner)

    def __setitem__(self, key, value):
        if isinstance(key, slice) and (key.stop or 0) > len(self.inner):
            raise IndexError(f"Memory write up to 0x{key.stop:04x} exceeds the {len(self.inner)} bytes available")
        self.inner[key] = value

    def __getitem__(self, index):
        return self.inner[index]

    def load(self, rom):
        """copy the program bytes at ROM_START_ADDRESS, refusing anything that does not fit"""
        if len(rom) > MAX_ROM_SIZE:
            raise ProgramTooLargeError(
                f"The program is {len(rom)} bytes long but only {MAX_ROM_SIZE} bytes are available")
        self.inner[ROM_START_ADDRESS:] = [0] * MAX_ROM_SIZE
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom

    def load_rom(self, path=None):
        """load ROM file from user specified path if present, raise an exception otherwise"""
        with open(path, mode='rb') as f:
            rom = f.read()
        self.load(rom)
        if DEBUG: print(f"The ROM at path {path} has been loaded successfully")
        return rom


# ******************** CPU SECTION
class Chip8:
    def __init__(self, audio=None, timer_divider=TIMER_DIVIDER):
        self.audio = audio
        self.timer_divider = timer_divider
        self.program = b""
        self.timers = None
        self.reset()
        # groups 0x0, 0xE and 0xF are decoded on the low byte, group 0x8 on the low nibble
        self.misc = {
            0xE0: self._clear_screen,
            0xEE: self._return,
        }
        self.arithmetic = [
            self._set_vx_to_vy,
            self._set_vx_or_vy,
            self._set_vx_and_vy,
            self._set_vx_xor_vy,
            self._add_vx_vy,
            self._sub_vx_vy,
            self._shr,
            self._subn_vx_vy,
            self._invalid_opcode,
            self._invalid_opcode,
            self._invalid_opcode,
            self._invalid_opcode,
            self._invalid_opcode,
            self._invalid_opcode,
            self._shl,
            self._invalid_opcode,
        ]
        self.keypad_skips = {
            0x9E: self._skip_if_pressed,
            0xA1: self._skip_if_not_pressed,
        }
        self.utilities = {
            0x07: self._set_vx_dt,
            0x0A: self._wait_keypress,
            0x15: self._set_dt_vx,
            0x18: self._set_st,
            0x1E: self._add_to_idx,
            0x29: self._select_char,
            0x33: self._bcd_repr,
            0x55: self._store_vregs,
            0x65: self._load_vregs,
        }
        self.instructions = [
            self.misc,
            self._jump,
            self._call_addr,
            self._skip_if_eq,
            self._skip_if_not_eq,
            self._skip_if_eq_regs,
            self._set_vk,
            self._add_to_vk,
            self.arithmetic,
            self._skip_if_not_eq_regs,
            self._set_idx,
            self._jump_plus,
            self._random_byte_and,
            self._to_screen,
            self.keypad_skips,
            self.utilities,
        ]

    def reset(self):
        """bring the machine back to its power-on state, reloading the last program"""
        self.mem = Memory()
        self.stack = Stack()
        self.v_regs = [0] * REGISTERS_COUNT
        self.keys = [False] * KEYS_COUNT
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.display = Display()
        if self.timers is not None and self.timers.sound_on:
            self.timers.set_sound(0)
        self.timers = Timers(self.timer_divider, self.audio)
        self.state = State.RUNNING
        self.waiting_register = None
        if self.program:
            self.mem.load(self.program)

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        flags = f"STATE:{self.state.name} | DRAW:{self.draw_flag} | DT:{self.dt} | ST:{self.st}"
        return f"{registers}\n{stack}\n{flags}"

    # ********** EXTERNAL INTERFACE
    @property
    def dt(self):
        return self.timers.delay

    @property
    def st(self):
        return self.timers.sound

    @property
    def sound_on(self):
        return self.timers.sound_on

    @property
    def draw_flag(self):
        return self.display.dirty

    @property
    def halted(self):
        return self.state is State.HALTED

    def load_program(self, rom):
        self.mem.load(rom)
        self.program = bytes(rom)

    def load_rom(self, path):
        self.program = bytes(self.mem.load_rom(path))

    def draw_complete(self):
        """the renderer has consumed the frame buffer"""
        self.display.acknowledge()

    def key_pressed(self, key):
        self._check_key(key)
        self.keys[key] = True

    def key_released(self, key):
        self._check_key(key)
        self.keys[key] = False

    def crash_report(self, opcode):
        return CrashReport(opcode, self.pc, self.idx, self.v_regs, self.stack)

    # ********** INSTRUCTIONS
    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{x}")
    def _skip_if_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        x = (opcode & 0x0F00) >> 8
        key = self.v_regs[x]
        if self._is_pressed(key):
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{x}")
    def _skip_if_not_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        x = (opcode & 0x0F00) >> 8
        key = self.v_regs[x]
        if not self._is_pressed(key):
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, K")
    def _wait_keypress(self, opcode):
        """wait for a key press and store its value in Vx"""
        x = (opcode & 0x0F00) >> 8
        key = self._first_pressed()
        if key is None:
            self.state = State.AWAITING_KEY     # following cycles poll the keypad instead of fetching
            self.waiting_register = x
        else:
            self.v_regs[x] = key
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, DT")
    def _set_vx_dt(self, opcode):
        """set Vx = DT (delay timer) value"""
        x = (opcode & 0x0F00) >> 8
        self.v_regs[x] = self.timers.delay
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{x}")
    def _set_dt_vx(self, opcode):
        """set DT (delay timer) = Vx"""
        x = (opcode & 0x0F00) >> 8
        self.timers.delay = self.v_regs[x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, opcode):
        self.display.clear()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, opcode):
        """return from a subroutine"""
        if not len(self.stack):
            raise StackUnderflowError("Return with an empty stack", self.crash_report(opcode))
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump(self, opcode):
        address = opcode & 0x0FFF
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:04x}")
    def _call_addr(self, opcode):
        address = opcode & 0x0FFF
        if self.stack.full():
            raise StackOverflowError(f"Stack overflow calling 0x{address:04X}", self.crash_report(opcode))
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, {comparison_value}")
    def _skip_if_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, {comparison_value}")
    def _skip_if_not_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, V{y}")
    def _skip_if_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, V{y}")
    def _skip_if_not_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, {value}")
    def _set_vk(self, opcode):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, V{y}")
    def _set_vx_to_vy(self, opcode):
        """set the value of Vx equal to that of Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x}, V{y}")
    def _set_vx_or_vy(self, opcode):
        """set the value of Vx to Vx OR Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x}, V{y}")
    def _set_vx_and_vy(self, opcode):
        """set the value of Vx to Vx AND Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x}, V{y}")
    def _set_vx_xor_vy(self, opcode):
        """set the value of Vx to Vx XOR Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, V{y}")
    def _add_vx_vy(self, opcode):
        """set the value of Vx to Vx + Vy, VF = carry"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        sum = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = sum & 0xFF     # keep only the lowest 8 bits from the result and store them in Vx
        self.v_regs[0xF] = 1 if sum > 0xFF else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x}, V{y}")
    def _sub_vx_vy(self, opcode):
        """set the value of Vx to Vx - Vy, VF = borrow"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        borrow = 1 if self.v_regs[x] < self.v_regs[y] else 0
        self.v_regs[x] = (self.v_regs[x] - self.v_regs[y]) & 0xFF
        self.v_regs[0xF] = borrow       # VF mirrors the underflow, it is not NOT borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x} 1")
    def _shr(self, opcode):
        """set Vx equal to Vx SHR 1, VF = shifted out bit"""
        x = (opcode & 0x0F00) >> 8
        LSB = self.v_regs[x] & 0x1
        self.v_regs[x] = self.v_regs[x] >> 1
        self.v_regs[0xF] = LSB
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x}, V{y}")
    def _subn_vx_vy(self, opcode):
        """set the value of Vx to Vy - Vx, VF = borrow"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        borrow = 1 if self.v_regs[y] < self.v_regs[x] else 0
        self.v_regs[x] = (self.v_regs[y] - self.v_regs[x]) & 0xFF
        self.v_regs[0xF] = borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x} 1")
    def _shl(self, opcode):
        """set Vx equal to Vx SHL 1, VF = Vx & 0x80 before the shift"""
        x = (opcode & 0x0F00) >> 8
        MSB = self.v_regs[x] & 0x80     # raw bit value (0x80 or 0), not normalized to 1
        self.v_regs[x] = (self.v_regs[x] << 1) & 0xFF   # multiply by 2 and keep only the lowest 8 bits from the result
        self.v_regs[0xF] = MSB
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, {value}")
    def _add_to_vk(self, opcode):
        """add to the value already present in one of the variable registers, VF untouched"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits from the result and store them in Vx
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{value:04x}")
    def _set_idx(self, opcode):
        """set the value of the I register"""
        value = opcode & 0x0FFF
        self.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{address:04x}")
    def _jump_plus(self, opcode):
        address = opcode & 0x0FFF
        v0 = self.v_regs[0x0]
        self.pc = address + v0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x}, 0x{kk:02x}")
    def _random_byte_and(self, opcode):
        x, kk = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        rnd = random.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{register}")
    def _set_st(self, opcode):
        """set ST = Vx, a nonzero value starts the tone"""
        register = (opcode & 0x0F00) >> 8
        self.timers.set_sound(self.v_regs[register])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, 0x{value:03x}")
    def _add_to_idx(self, opcode):
        """set I = I + the 12 bit immediate field, VF = 1 if I went past 0xFFF"""
        value = opcode & 0x0FFF
        self.idx = (self.idx + value) & 0xFFFF     # 16 bit register, no 12 bit wrap around
        self.v_regs[0xF] = 1 if self.idx > 0xFFF else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{register}")
    def _select_char(self, opcode):
        """set I to location of sprite for digit Vx"""
        register = (opcode & 0x0F00) >> 8
        self.idx = FONT_START_ADDRESS + self.v_regs[register] * FONT_HEIGHT    # each character font is made of 5 bytes
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x}")
    def _store_vregs(self, opcode):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        self._check_idx_range(opcode, x + 1)
        self.mem[self.idx:self.idx+x+1] = self.v_regs[:x+1]
        self.idx += x + 1
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, [I]")
    def _load_vregs(self, opcode):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        self._check_idx_range(opcode, x + 1)
        self.v_regs[:x+1] = self.mem[self.idx:self.idx+x+1]
        self.idx += x + 1
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x}")
    def _bcd_repr(self, opcode):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        x = (opcode & 0x0F00) >> 8
        self._check_idx_range(opcode, 3)
        ones = self.v_regs[x] % 10
        tens = (self.v_regs[x] // 10) % 10
        hundreds = self.v_regs[x] // 100
        self.mem[self.idx], self.mem[self.idx+1], self.mem[self.idx+2] = hundreds, tens, ones
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x}, V{y}, {n_bytes}")
    def _to_screen(self, opcode):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        n_bytes = opcode & 0x000F
        sprite = self.mem[self.idx:self.idx+n_bytes]    # bytes past the end of memory are simply not read
        collision = self.display.blit(self.v_regs[x], self.v_regs[y], sprite)
        self.v_regs[0xF] = 1 if collision else 0
        return locals()

    def _invalid_opcode(self, opcode):
        raise InvalidOpcodeError(f"Unknown opcode: 0x{opcode:04X}", self.crash_report(opcode))

    # ********** HELPERS
    def _goto_next_instruction(self):
        self.pc += 0x2

    def _check_key(self, key):
        if not 0 <= key < KEYS_COUNT:
            raise IndexError(f"Key index must be in [0, {KEYS_COUNT}), got {key}")

    def _is_pressed(self, key):
        return key < KEYS_COUNT and self.keys[key]

    def _first_pressed(self):
        """lowest index of the keys currently held, None if none is"""
        for key, pressed in enumerate(self.keys):
            if pressed:
                return key
        return None

    def _check_idx_range(self, opcode, length):
        if self.idx + length > MEMORY_SIZE:
            raise MemoryAccessError(
                f"Access to 0x{self.idx:04X}-0x{self.idx+length-1:04X} is out of memory",
                self.crash_report(opcode))

    def fetch(self):
        """read the two bytes opcode pointed to by pc and move pc to the following one"""
        opcode = self.mem[self.pc] << 8 | self.mem[self.pc + 1]
        self._goto_next_instruction()
        return opcode

    def decode(self, opcode):
        """decode opcodes through the dispatch tables and return respective function"""
        if DEBUG: print(f"opcode: 0x{opcode:04x}", end="    ")
        entry = self.instructions[(opcode & 0xF000) >> 12]
        if isinstance(entry, list):
            return entry[opcode & 0x000F]
        if isinstance(entry, dict):
            return entry.get(opcode & 0x00FF, self._invalid_opcode)
        return entry

    def cycle(self):
        """emulate one machine cycle, return True once the machine is halted"""
        if self.state is State.HALTED:
            return True
        if self.state is State.AWAITING_KEY:
            key = self._first_pressed()
            if key is not None:
                self.v_regs[self.waiting_register] = key
                self.waiting_register = None
                self.state = State.RUNNING
        elif self.pc >= MEMORY_SIZE - 1:
            self.state = State.HALTED       # not even a full opcode left to fetch
            return True
        else:
            # fetch (each instruction is two bytes long)
            opcode = self.fetch()
            # decode + execute
            instruction = self.decode(opcode)
            instruction(opcode)
        # delay/sound timers (dt/st)
        self.timers.tick()
        if self.pc >= MEMORY_SIZE:
            self.state = State.HALTED
        return self.state is State.HALTED


# ******************** DEBUGGER SECTION
class Debugger:
    """
    pause/step wrapper around a machine, it starts paused
    while running the machine advances once every `divider` calls to cycle()
    while paused only the steps queued with step() are executed
    """
    def __init__(self, machine, divider=1):
        self.machine = machine
        self.active = False
        self.divider = divider
        self.counter = 0
        self.remaining_steps = 0

    def toggle_pause(self):
        self.active = not self.active

    def step(self):
        self.remaining_steps += 1

    def key_pressed(self, key):
        if self.active:
            self.machine.key_pressed(key)

    def key_released(self, key):
        if self.active:
            self.machine.key_released(key)

    def current_opcode(self):
        pc = self.machine.pc
        if pc >= MEMORY_SIZE - 1:
            return None
        return self.machine.mem[pc] << 8 | self.machine.mem[pc + 1]

    def cycle(self):
        if self.active:
            self.counter += 1
            if self.counter >= self.divider:
                self.counter = 0
                return self.machine.cycle()
        elif self.remaining_steps > 0:
            self.remaining_steps -= 1
            return self.machine.cycle()
        return self.machine.halted
