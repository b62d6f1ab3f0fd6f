import tempfile
import unittest
from pathlib import Path
from unittest import mock

import inspector
from boot_config import BootImageConfig
from bootimg_format import build_boot_image
from errors import ToolUnavailable
from host_bootstrap import BackendAvailability, CommandResult

ABOOTIMG_OUTPUT = """
Android Boot Image Info:

* file name = boot.img

* image size = 8396800 bytes (8.01 MB)
  page size  = 2048 bytes

* Boot Name = "RG35XX_H Custom"

* kernel size       = 8000000 bytes (7.63 MB)
  ramdisk size      = 390000 bytes (0.37 MB)

* load addresses:
  kernel:       0x40080000
  ramdisk:      0x44000000
  tags:         0x4e000000

* cmdline = console=tty0 loglevel=7 ignore_loglevel

* id = 0x1b2c3d4e 0x00000000
"""


class PageSizeParsingTests(unittest.TestCase):
    def test_decimal_page_size(self) -> None:
        self.assertEqual(2048, inspector.parse_page_size("  page size  = 2048 bytes"))
        self.assertEqual(4096, inspector.parse_page_size("BOARD_PAGE_SIZE 4096"))

    def test_hex_page_size_uses_token_fallback(self) -> None:
        self.assertEqual(2048, inspector.parse_page_size("PageSize: 0x800"))

    def test_no_page_size(self) -> None:
        self.assertIsNone(inspector.parse_page_size("kernel size = 100 bytes"))
        self.assertIsNone(inspector.parse_page_size(""))

    def test_abootimg_report(self) -> None:
        info = inspector.parse_inspector_output(ABOOTIMG_OUTPUT, backend="abootimg")

        self.assertEqual(2048, info.page_size)
        self.assertEqual("RG35XX_H Custom", info.board)
        self.assertEqual("console=tty0 loglevel=7 ignore_loglevel", info.cmdline)
        self.assertEqual(0x40080000, info.kernel_addr)
        self.assertEqual(0x44000000, info.ramdisk_addr)
        self.assertEqual(0x4E000000, info.tags_addr)
        self.assertEqual("abootimg", info.backend)

    def test_unpackbootimg_fields(self) -> None:
        text = "BOARD_KERNEL_BASE 40000000\nBOARD_PAGE_SIZE 2048\nBOARD_NAME stock\n"
        info = inspector.parse_inspector_output(text)

        self.assertEqual(0x40000000, info.base)
        self.assertEqual(2048, info.page_size)
        self.assertEqual("stock", info.board)


class InspectBootImageTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        self.root = Path(self._tmpdir.name)
        self.image = self.root / "boot.img"
        self.image.write_bytes(build_boot_image(b"k" * 3000, b"r" * 100, BootImageConfig()))

    def test_missing_image_is_unknown(self) -> None:
        info = inspector.inspect_boot_image(self.root / "absent.img", [inspector.NativeInspector()])

        self.assertTrue(info.is_unknown)
        self.assertEqual("unknown", info.page_size_text())

    def test_no_backends_is_unknown(self) -> None:
        backends = inspector.default_inspectors(BackendAvailability.none())
        backends = [backend for backend in backends if backend.name != "native"]

        info = inspector.inspect_boot_image(self.image, backends)

        self.assertIsNone(info.page_size)

    def test_native_backend_reads_header(self) -> None:
        info = inspector.inspect_boot_image(self.image, [inspector.NativeInspector()])

        self.assertEqual(2048, info.page_size)
        self.assertEqual("native", info.backend)

    def test_unparseable_file_is_unknown(self) -> None:
        garbage = self.root / "garbage.img"
        garbage.write_bytes(b"not a boot image" * 200)

        with self.assertLogs(inspector.LOG, level="WARNING"):
            info = inspector.inspect_boot_image(garbage, [inspector.NativeInspector()])

        self.assertTrue(info.is_unknown)

    def test_first_backend_with_page_size_wins(self) -> None:
        with mock.patch(
            "inspector.run_tool",
            return_value=CommandResult(["abootimg"], 0, "* Page Size: 0x1000\n"),
        ) as run_mock:
            info = inspector.inspect_boot_image(
                self.image, [inspector.AbootimgInspector(), inspector.NativeInspector()]
            )

        self.assertEqual(4096, info.page_size)
        self.assertEqual("abootimg", info.backend)
        run_mock.assert_called_once()

    def test_missing_tool_falls_through(self) -> None:
        with mock.patch("inspector.run_tool", side_effect=ToolUnavailable("abootimg")):
            info = inspector.inspect_boot_image(
                self.image, [inspector.AbootimgInspector(), inspector.NativeInspector()]
            )

        self.assertEqual(2048, info.page_size)
        self.assertEqual("native", info.backend)

    def test_unpackbootimg_reads_field_files(self) -> None:
        def _unpackbootimg(command, cwd=None, logger=None):
            args = [str(part) for part in command]
            workdir = Path(args[args.index("-o") + 1])
            for suffix, content in {
                "pagesize": "2048\n",
                "base": "10000000\n",
                "board": "stock\n",
                "cmdline": "console=ttyS0\n",
                "kernel_offset": "00008000\n",
            }.items():
                (workdir / f"boot.img-{suffix}").write_text(content)
            return CommandResult(args, 0, "")

        with mock.patch("inspector.run_tool", side_effect=_unpackbootimg):
            info = inspector.inspect_boot_image(self.image, [inspector.UnpackbootimgInspector()])

        self.assertEqual(2048, info.page_size)
        self.assertEqual(0x10000000, info.base)
        self.assertEqual("stock", info.board)
        self.assertEqual("console=ttyS0", info.cmdline)
        self.assertEqual("unpackbootimg", info.backend)

    def test_default_inspectors_follow_priority(self) -> None:
        availability = BackendAvailability.of("unpackbootimg", "abootimg")
        names = [backend.name for backend in inspector.default_inspectors(availability)]

        self.assertEqual(["abootimg", "unpackbootimg", "native"], names)

    def test_describe_reports_hash_and_fields(self) -> None:
        report = inspector.describe_boot_image(self.image, [inspector.NativeInspector()])

        self.assertIn("Page size: 2048", report)
        self.assertIn("SHA256: ", report)
        self.assertIn("Board name: RG35XX_H Custom", report)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
