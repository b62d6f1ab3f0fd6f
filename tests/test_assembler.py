import tempfile
import unittest
from pathlib import Path
from unittest import mock

import assembler
from boot_config import BootImageConfig
from bootimg_format import build_boot_image, read_header, unpack_boot_image
from errors import AssemblyFailed
from host_bootstrap import BackendAvailability, CommandResult


class AssemblerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        self.root = Path(self._tmpdir.name)
        self.kernel = self.root / "Image"
        self.kernel.write_bytes(b"K" * 8_000_000)
        self.ramdisk = self.root / "ramdisk.cpio.gz"
        self.ramdisk.write_bytes(b"R" * 1234)
        self.dtb = self.root / "board.dtb"
        self.dtb.write_bytes(b"\xd0\x0d\xfe\xed" + b"D" * 60)
        self.output = self.root / "out" / "boot.img"

    def request(self, **overrides) -> assembler.AssemblyRequest:
        values = {"kernel": self.kernel, "ramdisk": self.ramdisk, "output": self.output}
        values.update(overrides)
        return assembler.AssemblyRequest(**values)


def _fake_packer(command, cwd=None, logger=None):
    """Stand in for mkbootimg/abootimg by writing a native image to the requested output."""

    args = [str(part) for part in command]
    if args[0] == "mkbootimg":
        kernel = Path(args[args.index("--kernel") + 1])
        ramdisk = Path(args[args.index("--ramdisk") + 1])
        page_size = int(args[args.index("--pagesize") + 1])
        output = Path(args[args.index("--output") + 1])
    else:
        kernel = Path(args[args.index("-k") + 1])
        ramdisk = Path(args[args.index("-r") + 1])
        config_text = Path(args[args.index("-f") + 1]).read_text()
        page_size = int(config_text.split("pagesize = ")[1].split()[0], 16)
        output = Path(args[2])
    config = BootImageConfig().with_page_size(page_size)
    output.write_bytes(build_boot_image(kernel.read_bytes(), ramdisk.read_bytes(), config))
    return CommandResult(args, 0, "")


class AssembleBootImageTests(AssemblerTestCase):
    def assert_contains_payloads(self) -> None:
        components = unpack_boot_image(self.output)
        self.assertEqual(self.kernel.read_bytes(), components.kernel)
        self.assertEqual(self.ramdisk.read_bytes(), components.ramdisk)
        offsets = components.header.section_offsets()
        self.assertEqual(0, offsets.ramdisk % 2048)
        self.assertEqual(2048 + 8_001_536, offsets.ramdisk)

    def test_mkbootimg_tier(self) -> None:
        with mock.patch("assembler.run_tool", side_effect=_fake_packer) as run_mock:
            result = assembler.assemble_boot_image(self.request(), [assembler.MkbootimgAssembler()])

        self.assertEqual("mkbootimg", result.backend)
        command = run_mock.call_args[0][0]
        self.assertEqual("2048", command[command.index("--pagesize") + 1])
        self.assertEqual("0x40000000", command[command.index("--base") + 1])
        self.assert_contains_payloads()

    def test_abootimg_tier_removes_config(self) -> None:
        seen = []

        def _packer(command, cwd=None, logger=None):
            seen.append(Path(str(command[command.index("-f") + 1])))
            return _fake_packer(command, cwd, logger)

        with mock.patch("assembler.run_tool", side_effect=_packer):
            result = assembler.assemble_boot_image(self.request(), [assembler.AbootimgAssembler()])

        self.assertEqual("abootimg", result.backend)
        self.assertEqual(1, len(seen))
        self.assertFalse(seen[0].exists())
        self.assert_contains_payloads()

    def test_manual_tier(self) -> None:
        result = assembler.assemble_boot_image(self.request(), [assembler.ManualAssembler()])

        self.assertEqual("manual", result.backend)
        self.assert_contains_payloads()

    def test_manual_tier_packs_dtb_as_second_stage(self) -> None:
        assembler.assemble_boot_image(self.request(dtb=self.dtb), [assembler.ManualAssembler()])

        self.assertEqual(self.dtb.read_bytes(), unpack_boot_image(self.output).second)

    def test_falls_back_when_tools_fail(self) -> None:
        backends = [assembler.MkbootimgAssembler(), assembler.AbootimgAssembler(), assembler.ManualAssembler()]
        with mock.patch("assembler.run_tool", return_value=CommandResult(["tool"], 1, "")):
            with self.assertLogs(assembler.LOG, level="WARNING"):
                result = assembler.assemble_boot_image(self.request(), backends)

        self.assertEqual("manual", result.backend)
        self.assertEqual(["mkbootimg", "abootimg", "manual"], [attempt.name for attempt in result.attempts])
        self.assertEqual([], list(self.output.parent.glob("*.partial")))
        self.assert_contains_payloads()

    def test_zero_tools_still_assembles(self) -> None:
        backends = assembler.default_assemblers(BackendAvailability.none())
        result = assembler.assemble_boot_image(self.request(ramdisk=None), backends)

        self.assertEqual("manual", result.backend)
        self.assertEqual(2048, read_header(self.output).page_size)

    def test_missing_kernel_raises(self) -> None:
        with self.assertRaises(AssemblyFailed):
            assembler.assemble_boot_image(
                self.request(kernel=self.root / "missing"), [assembler.ManualAssembler()]
            )

    def test_missing_dtb_raises(self) -> None:
        with self.assertRaises(AssemblyFailed):
            assembler.assemble_boot_image(
                self.request(dtb=self.root / "missing.dtb"), [assembler.ManualAssembler()]
            )

    def test_all_backends_failing_lists_attempts(self) -> None:
        with mock.patch("assembler.run_tool", return_value=CommandResult(["mkbootimg"], 2, "")):
            with self.assertRaises(AssemblyFailed) as ctx:
                assembler.assemble_boot_image(self.request(), [assembler.MkbootimgAssembler()])

        self.assertIn("mkbootimg", str(ctx.exception))
        self.assertFalse(self.output.exists())


class AbootimgConfigTests(unittest.TestCase):
    def test_config_uses_hex_page_size_and_device_addresses(self) -> None:
        text = assembler.render_abootimg_config(BootImageConfig(), 1000, 1000)

        self.assertIn("pagesize = 0x800\n", text)
        self.assertIn("bootsize = 0x2000000\n", text)
        self.assertIn("kerneladdr = 0x40080000\n", text)
        self.assertIn("cmdline = console=tty0 loglevel=7 ignore_loglevel\n", text)

    def test_bootsize_grows_for_large_payloads(self) -> None:
        text = assembler.render_abootimg_config(BootImageConfig(), 0x3000000, 10)

        self.assertIn("bootsize = 0x3001000\n", text)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
