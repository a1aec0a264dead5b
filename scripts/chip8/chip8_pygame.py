# pygame front-end for the CHIP-8 virtual machine defined in chip8.py
#
# the machine is driven at a fixed cadence by the loop in main(), the window is
# repainted only when the machine raises its draw flag and the tone is played
# through a Beeper handed over to the machine as its audio gate
#
# KEYPAD LAYOUT (left: CHIP-8, right: keyboard)
#   1 2 3 C      1 2 3 4
#   4 5 6 D      Q W E R
#   7 8 9 E      A S D F
#   A 0 B F      Z X C V


import argparse
import os
import sys
from array import array
from types import MappingProxyType

os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
    K_ESCAPE, K_SPACE, K_RETURN,
)

from chip8 import (
    Chip8, Chip8Error, Debugger, ProgramTooLargeError,
    DEBUG, SCREEN_WIDTH, SCREEN_HEIGHT,
)


# ******************** STATIC SECTION
KEY_MAPPINGS = MappingProxyType({
    K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
    K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
    K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
    K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
})

CYCLES_PER_SECOND = 240
SCALE = 15
SAMPLE_RATE = 44100
TONE_FREQUENCY = 440
VOLUME = 0.2
PANEL_LINE_HEIGHT = 20
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)
BLACK = pygame.Color(0,0,0,255)
WHITE = pygame.Color(255,255,255,255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 emulator")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--speed", type=int, default=CYCLES_PER_SECOND, help="instructions executed per second")
    parser.add_argument("--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("--debug", action="store_true", help="start paused with the debugger panel (SPACE pause/resume, RETURN step)")
    parser.add_argument("--mute", action="store_true", help="do not open the audio device")
    return parser.parse_args(argv)

def handle_event(event, target):
    """
    forward a pygame event to the machine (or to the debugger wrapping it)
    return False when the user asked to quit
    """
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == K_ESCAPE:
            return False
        if isinstance(target, Debugger) and event.key == K_SPACE:
            target.toggle_pause()
        elif isinstance(target, Debugger) and event.key == K_RETURN:
            target.step()
        elif event.key in KEY_MAPPINGS:
            target.key_pressed(KEY_MAPPINGS[event.key])     # register keypress
    elif event.type == pygame.KEYUP and event.key in KEY_MAPPINGS:
        target.key_released(KEY_MAPPINGS[event.key])
    return True


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE, panel_height=0):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale + panel_height),
        )
        self.surface.fill(self.background)

    def render(self, display):
        """paint the whole frame buffer, the change becomes visible after refresh()"""
        self.surface.fill(self.background, (0, 0, self.w * self.scale, self.h * self.scale))
        for y, row in enumerate(display.rows()):
            for x, pixel in enumerate(row):
                if pixel:
                    pygame.draw.rect(
                        self.surface,
                        self.foreground,
                        (x * self.scale, y * self.scale, self.scale, self.scale)
                    )

    @staticmethod
    def refresh():
        pygame.display.flip()


class Beeper:
    """square wave tone looping between start() and stop()"""
    def __init__(self, frequency=TONE_FREQUENCY, volume=VOLUME):
        # modified from: https://gist.github.com/ohsqueezy/6540433
        sample_rate, size, channels = pygame.mixer.get_init()
        period = int(round(sample_rate / frequency))
        amplitude = 2 ** (abs(size) - 1) - 1
        samples = array("h")
        for t in range(period):
            value = amplitude if t < period / 2 else -amplitude
            samples.extend([value] * channels)
        self.sound = pygame.mixer.Sound(buffer=samples)
        self.sound.set_volume(volume)
        self.playing = False

    def start(self):
        if not self.playing:
            self.sound.play(loops=-1)
            self.playing = True

    def stop(self):
        if self.playing:
            self.sound.stop()
            self.playing = False

def create_beeper(mute=False):
    """return a Beeper, or None when muted or when no audio device is available"""
    if mute:
        return None
    try:
        if pygame.mixer.get_init() is None:
            pygame.mixer.init(SAMPLE_RATE, -16, 1, 512)
        return Beeper()
    except pygame.error as err:
        if DEBUG: print(f"Audio disabled: {err}")
        return None


class DebugPanel:
    """registers, pc, stack and timers drawn below the CHIP-8 screen"""
    LINES = 5

    def __init__(self, top, width, fg_color=WHITE, bg_color=BLACK):
        self.top = top
        self.width = width
        self.height = self.LINES * PANEL_LINE_HEIGHT
        self.foreground = fg_color
        self.background = bg_color
        self.font = pygame.font.Font(None, PANEL_LINE_HEIGHT)

    @staticmethod
    def describe(debugger):
        machine = debugger.machine
        opcode = debugger.current_opcode()
        opcode = "------" if opcode is None else f"0x{opcode:04X}"
        status = "RUNNING" if debugger.active else "PAUSED"
        return [
            "REGISTERS  " + " ".join(f"{value:02X}" for value in machine.v_regs),
            f"PC/OPCODE  0x{machine.pc:04X}  {opcode}",
            "STACK      " + " ".join(f"0x{addr:04X}" for addr in machine.stack),
            f"INDEX REG  0x{machine.idx:04X}   DELAY 0x{machine.dt:02X}   SOUND 0x{machine.st:02X}",
            f"STATE      {machine.state.name}   DEBUGGER {status}",
        ]

    def render(self, surface, debugger):
        surface.fill(self.background, (0, self.top, self.width, self.height))
        for i, line in enumerate(self.describe(debugger)):
            text = self.font.render(line, True, self.foreground)
            surface.blit(text, (4, self.top + i * PANEL_LINE_HEIGHT))


# ******************** ENTRY POINT SECTION
def main(*args, **kwargs):
    options = get_args()
    # pygame initialization
    pygame.mixer.pre_init(SAMPLE_RATE, -16, 1, 512)
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(options.file))
    # CPU
    chip = Chip8(audio=create_beeper(options.mute))
    try:
        chip.load_rom(options.file)
    except (OSError, ProgramTooLargeError) as err:
        sys.exit(f"Could not load the ROM at path {options.file}: {err}")
    # IO
    panel = None
    target = chip
    panel_height = 0
    if options.debug:
        target = Debugger(chip)
        panel_height = DebugPanel.LINES * PANEL_LINE_HEIGHT
    s = Screen(s=options.scale, panel_height=panel_height)
    if options.debug:
        panel = DebugPanel(SCREEN_HEIGHT * options.scale, SCREEN_WIDTH * options.scale)
    # emulation loop
    run = True
    halted = False
    while run:
        # instructions per second
        clock.tick(options.speed)
        # process user input
        for event in pygame.event.get():
            if not handle_event(event, target):
                run = False
        if not halted:
            try:
                halted = target.cycle()     # emulate one machine cycle (fetch opcode, decode opcode, execute opcode, update timers)
            except Chip8Error as err:
                sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{err}\n{chip}")
            if halted and DEBUG: print("The program counter left the memory, machine halted")
        # refresh screen if needed
        if chip.draw_flag:
            s.render(chip.display)
            chip.draw_complete()
            s.refresh()
        if panel is not None:
            panel.render(s.surface, target)
            s.refresh()
    pygame.quit()


if __name__ == "__main__":
    main()
