import tempfile
import unittest
from dataclasses import replace
from pathlib import Path

import bootimg_format
from boot_config import BootImageConfig
from errors import BootImageFormatError


class PaddingTests(unittest.TestCase):
    def test_pad_to_page_rounds_up(self) -> None:
        self.assertEqual(2048, len(bootimg_format.pad_to_page(b"x", 2048)))
        self.assertEqual(4096, len(bootimg_format.pad_to_page(b"x" * 2049, 2048)))

    def test_pad_to_page_leaves_aligned_data_alone(self) -> None:
        data = b"\x01" * 4096
        self.assertEqual(data, bootimg_format.pad_to_page(data, 2048))
        self.assertEqual(b"", bootimg_format.pad_to_page(b"", 2048))

    def test_pad_to_page_rejects_non_positive_alignment(self) -> None:
        with self.assertRaises(ValueError):
            bootimg_format.pad_to_page(b"x", 0)

    def test_kernel_of_eight_million_bytes_pads_to_page_boundary(self) -> None:
        self.assertEqual(8_001_536, bootimg_format.align(8_000_000, 2048))
        self.assertEqual(3907, bootimg_format.page_count(8_000_000, 2048))


class BuildBootImageTests(unittest.TestCase):
    def test_sections_start_on_page_boundaries(self) -> None:
        kernel = b"K" * 8_000_000
        ramdisk = b"R" * 1000
        image = bootimg_format.build_boot_image(kernel, ramdisk, BootImageConfig())

        header = bootimg_format.BootImageHeader.unpack(image)
        offsets = header.section_offsets()

        self.assertEqual(2048, offsets.kernel)
        self.assertEqual(2048 + 8_001_536, offsets.ramdisk)
        self.assertEqual(0, offsets.ramdisk % 2048)
        self.assertEqual(kernel, image[offsets.kernel : offsets.kernel + len(kernel)])
        self.assertEqual(ramdisk, image[offsets.ramdisk : offsets.ramdisk + len(ramdisk)])
        self.assertEqual(0, len(image) % 2048)

    def test_header_carries_device_parameters(self) -> None:
        config = BootImageConfig()
        image = bootimg_format.build_boot_image(b"kernel", b"ramdisk", config, second=b"dtb")
        header = bootimg_format.BootImageHeader.unpack(image)

        self.assertEqual(2048, header.page_size)
        self.assertEqual(0x40080000, header.kernel_addr)
        self.assertEqual(0x44000000, header.ramdisk_addr)
        self.assertEqual(0x4E000000, header.tags_addr)
        self.assertEqual(3, header.second_size)
        self.assertEqual("RG35XX_H Custom", header.name)
        self.assertEqual("console=tty0 loglevel=7 ignore_loglevel", header.cmdline)
        self.assertEqual(
            bootimg_format.compute_image_id(b"kernel", b"ramdisk", b"dtb"),
            header.image_id[:20],
        )

    def test_invalid_page_size_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            bootimg_format.build_boot_image(b"k", b"r", BootImageConfig().with_page_size(3000))


class HeaderParsingTests(unittest.TestCase):
    def test_bad_magic(self) -> None:
        with self.assertRaises(BootImageFormatError):
            bootimg_format.BootImageHeader.unpack(b"\x00" * bootimg_format.HEADER_STRUCT.size)

    def test_truncated_header(self) -> None:
        with self.assertRaises(BootImageFormatError):
            bootimg_format.BootImageHeader.unpack(b"ANDROID!")

    def test_unpack_and_layout_check(self) -> None:
        config = BootImageConfig().with_page_size(4096)
        image = bootimg_format.build_boot_image(b"k" * 5000, b"r" * 300, config, second=b"d" * 10)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "boot.img"
            path.write_bytes(image)

            components = bootimg_format.unpack_boot_image(path)
            self.assertTrue(bootimg_format.check_layout(path))

            path.write_bytes(image[:6000])
            self.assertFalse(bootimg_format.check_layout(path))
            with self.assertRaises(BootImageFormatError):
                bootimg_format.unpack_boot_image(path)

        self.assertEqual(4096, components.header.page_size)
        self.assertEqual(b"k" * 5000, components.kernel)
        self.assertEqual(b"r" * 300, components.ramdisk)
        self.assertEqual(b"d" * 10, components.second)


class RepackTests(unittest.TestCase):
    def setUp(self) -> None:
        self.header = bootimg_format.BootImageHeader(
            kernel_size=0,
            kernel_addr=0x10080000,
            ramdisk_size=0,
            ramdisk_addr=0x14000000,
            second_size=0,
            second_addr=0x10F00000,
            tags_addr=0x1E000000,
            page_size=2048,
            os_version=0x0A000000,
            name="stock",
            cmdline="console=ttyS0",
            extra_cmdline="quiet",
        )

    def test_legacy_device_tree_follows_second_stage(self) -> None:
        image = bootimg_format.pack_boot_image(self.header, b"k" * 5000, b"r" * 300, b"d" * 10, b"t" * 300)
        header = bootimg_format.BootImageHeader.unpack(image)

        self.assertEqual(300, header.header_version)
        self.assertEqual(300, header.dt_size)
        offsets = header.section_offsets()
        self.assertEqual(
            (2048, 8192, 10240, 12288, 14336),
            (offsets.kernel, offsets.ramdisk, offsets.second, offsets.dt, offsets.end),
        )
        self.assertEqual(14336, len(image))
        self.assertEqual(b"t" * 300, image[12288 : 12288 + 300])

    def test_header_versions_one_and_two_have_no_device_tree(self) -> None:
        for version in (0, 1, bootimg_format.MAX_HEADER_VERSION):
            header = bootimg_format.BootImageHeader(0, 0, 0, 0, 0, 0, 0, 2048, header_version=version)
            self.assertEqual(0, header.dt_size)

    def test_repack_changes_only_the_page_size(self) -> None:
        image = bootimg_format.pack_boot_image(
            replace(self.header, page_size=4096), b"k" * 5000, b"r" * 300, b"", b"t" * 64
        )
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "boot.img"
            path.write_bytes(image)
            components = bootimg_format.unpack_boot_image(path)

        repacked = bootimg_format.BootImageHeader.unpack(bootimg_format.repack_with_page_size(components, 2048))

        self.assertEqual(2048, repacked.page_size)
        kept = ("kernel_addr", "ramdisk_addr", "second_addr", "tags_addr", "os_version", "name", "cmdline", "extra_cmdline")
        for name in kept:
            self.assertEqual(getattr(self.header, name), getattr(repacked, name), name)
        self.assertEqual(64, repacked.dt_size)
        self.assertEqual((5000, 300, 0), (repacked.kernel_size, repacked.ramdisk_size, repacked.second_size))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
