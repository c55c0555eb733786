"""
asyncio front for the CHIP-8 machine, for hosts that own an event loop
(browsers running pyodide/pygbag, async GUIs, servers streaming frames)

the machine itself never blocks: every call runs exactly one cycle and then
yields, so a wait-key instruction spins cooperatively instead of stalling the loop
"""

import asyncio
import logging
from os import PathLike

from chip8 import Chip8, KEY_COUNT, load_rom_file


log = logging.getLogger(__name__)


class AsyncChip8:
    def __init__(self, chip):
        self.chip = chip

    @classmethod
    async def new(cls, source, rng=None):
        """build a machine from ROM bytes or from the path of a ROM file, read off the event loop"""
        if isinstance(source, (str, PathLike)):
            source = await asyncio.to_thread(load_rom_file, source)
        return cls(Chip8(source, rng=rng))

    def get_ram(self):
        return self.chip.mem[0:len(self.chip.mem)]

    def get_screen(self):
        return self.chip.screen.flat()

    def get_pc(self):
        return self.chip.pc

    async def cycle(self, input):
        """run one cycle, input holds 16 ints where 1 means the key is held"""
        if len(input) != KEY_COUNT:
            raise ValueError(f"The keypad needs {KEY_COUNT} key states, got {len(input)}")
        self.chip.cycle([k == 1 for k in input])
        await asyncio.sleep(0)      # yield to the host event loop

    async def run(self, poll_keys, on_frame=None, sleep_ms=2, stop=None):
        """
        cycle until stop is set: poll_keys() gives the key vector for each cycle,
        on_frame(screen) is called with the flat screen whenever it changed
        """
        stop = stop if stop is not None else asyncio.Event()
        cycles = 0
        while not stop.is_set():
            await self.cycle(poll_keys())
            cycles += 1
            if on_frame is not None and self.chip.draw_flag:
                on_frame(self.get_screen())
            await asyncio.sleep(sleep_ms / 1000)
        log.info(f"stopped after {cycles} cycles")
        return cycles
