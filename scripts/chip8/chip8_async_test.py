import asyncio
import os
import tempfile
import unittest

from chip8 import RomTooLargeError, ROM_START_ADDRESS
from chip8_async import AsyncChip8


SPRITE_ROM = bytes([
    0xF0, 0x29,     # LD F, V0
    0xD0, 0x05,     # DRW V0, V0, 5
    0xF1, 0x0A,     # LD V1, K
    0x12, 0x06,     # JP 0x206
])


class TestAsyncChip8(unittest.TestCase):
    def test_new_from_bytes(self):
        vm = asyncio.run(AsyncChip8.new(SPRITE_ROM))
        self.assertEqual(vm.get_pc(), ROM_START_ADDRESS)
        ram = vm.get_ram()
        self.assertEqual(len(ram), 4096)
        self.assertEqual(ram[ROM_START_ADDRESS:ROM_START_ADDRESS+len(SPRITE_ROM)], SPRITE_ROM)

    def test_new_from_path(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "sprite.ch8")
            with open(path, "wb") as f:
                f.write(SPRITE_ROM)
            vm = asyncio.run(AsyncChip8.new(path))
        self.assertEqual(vm.get_ram()[ROM_START_ADDRESS], 0xF0)

    def test_new_fails_on_bad_rom(self):
        with self.assertRaises(RomTooLargeError):
            asyncio.run(AsyncChip8.new(bytes(4096)))
        with self.assertRaises(OSError):
            asyncio.run(AsyncChip8.new("/nonexistent/rom.ch8"))

    def test_cycle(self):
        async def scenario():
            vm = await AsyncChip8.new(SPRITE_ROM)
            released = [0] * 16
            for _ in range(4):
                await vm.cycle(released)
            waiting_pc = vm.get_pc()
            pressed = [0] * 16
            pressed[0xE] = 1
            await vm.cycle(pressed)
            return vm, waiting_pc

        vm, waiting_pc = asyncio.run(scenario())
        self.assertEqual(waiting_pc, 0x204)
        self.assertEqual(vm.get_pc(), 0x206)
        self.assertEqual(vm.chip.v_regs[0x1], 0xE)
        screen = vm.get_screen()
        self.assertEqual(len(screen), 64 * 32)
        self.assertEqual(screen[0:4], [1, 1, 1, 1])
        self.assertEqual(screen[64:68], [1, 0, 0, 1])

    def test_cycle_rejects_short_input(self):
        vm = asyncio.run(AsyncChip8.new(SPRITE_ROM))
        with self.assertRaises(ValueError):
            asyncio.run(vm.cycle([0] * 8))

    def test_run_until_stopped(self):
        frames = []

        async def scenario():
            vm = await AsyncChip8.new(SPRITE_ROM)
            stop = asyncio.Event()

            def on_frame(screen):
                frames.append(screen)
                stop.set()

            return await vm.run(lambda: [0] * 16, on_frame, sleep_ms=0, stop=stop)

        cycles = asyncio.run(scenario())
        self.assertEqual(cycles, 2)
        self.assertEqual(len(frames), 1)


if __name__ == "__main__":
    unittest.main()
