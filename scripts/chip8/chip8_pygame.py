import argparse
import logging
import os
import sys

os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import Chip8, DEBUG, KEY_COUNT, SCREEN_HEIGHT, SCREEN_WIDTH


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
# the CHIP-8 hex keypad is laid out on the left side of a qwerty keyboard
# +-----+-----+-----+-----+
# | 1/1 | 2/2 | 3/3 | C/4 |
# | 4/Q | 5/W | 6/E | D/R |
# | 7/A | 8/S | 9/D | E/F |
# | A/Z | 0/X | B/C | F/V |
# +-----+-----+-----+-----+
KEY_MAPPINGS = {
    K_x: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_q: 0x4,
    K_w: 0x5,
    K_e: 0x6,
    K_a: 0x7,
    K_s: 0x8,
    K_d: 0x9,
    K_z: 0xA,
    K_c: 0xB,
    K_4: 0xC,
    K_r: 0xD,
    K_f: 0xE,
    K_v: 0xF,
}

SCALE = 15
SLEEP_MS = 2
BLACK = pygame.Color(0, 0, 0, 255)
WHITE = pygame.Color(255, 255, 255, 255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 virtual machine")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("--sleep", type=int, default=SLEEP_MS, metavar="MS", help="milliseconds to sleep between cycles")
    parser.add_argument("--debug", action="store_true", help="log every executed instruction")
    return parser.parse_args(argv)

def poll_keys(pressed):
    """turn pygame's key state into the 16 booleans the keypad expects"""
    keys = [False] * KEY_COUNT
    for key, index in KEY_MAPPINGS.items():
        if pressed[key]:
            keys[index] = True
    return keys


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLACK, fg_color=WHITE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, framebuffer):
        """paint every pixel of the framebuffer, the change is visible after refresh"""
        for y, row in enumerate(framebuffer.rows()):
            for x, pixel in enumerate(row):
                pygame.draw.rect(
                    self.surface,
                    self.foreground if pixel else self.background,
                    (x * self.scale, y * self.scale, self.scale, self.scale)
                )

    @staticmethod
    def refresh():
        pygame.display.flip()


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    logging.basicConfig(level=logging.INFO)
    if args.debug or DEBUG:
        logging.getLogger().setLevel(logging.DEBUG)
    try:
        chip = Chip8.from_file(args.file)
    except (OSError, ValueError) as e:
        sys.exit(f"Cannot load the ROM at path {args.file}: {e}")
    # pygame initialization
    pygame.init()
    pygame.display.set_caption(os.path.basename(args.file))
    s = Screen(s=args.scale)
    s.refresh()
    # emulation loop
    run = True
    try:
        while run:
            # loop throught the event queue
            for event in pygame.event.get():
                if event.type == pygame.QUIT:
                    run = False
                elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                    run = False
            # emulate one machine cycle (latch keys, update timers, fetch, decode, execute)
            chip.cycle(poll_keys(pygame.key.get_pressed()))
            if chip.draw_flag:
                s.render(chip.framebuffer)
                s.refresh()
            pygame.time.wait(args.sleep)
    except IndexError as e:
        log.error(e)
        sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{chip}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
