#!/usr/bin/env python3
"""
Tests for cloning, verifying and patching container images.
"""

import os
import tempfile
import textwrap
import unittest
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import mmh3

# Add parent directory to path to import the module
sys.path.insert(0, str(Path(__file__).parent.parent))

from dir2sif import (
    ContainerPatchError,
    SifPatcher,
    clone_image,
    iter_block_hashes,
    read_primary_arch,
    verify_clone,
)


def sif_header(arch=b"02\0", magic=b"SIF_MAGIC\0"):
    """Build the start of a SIF global header."""
    launch = b"#!/usr/bin/env run-singularity\n".ljust(32, b"\0")
    return launch + magic + b"01\0" + arch + b"\0" * 64


class TestCloneImage(unittest.TestCase):
    """Tests for clone_image and verify_clone."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_path = Path(self.temp_dir.name)
        self.base = self.temp_path / "base.sif"
        self.output = self.temp_path / "out.sif"

    def tearDown(self):
        """Clean up test fixtures."""
        self.temp_dir.cleanup()

    def test_byte_identical_copy(self):
        data = os.urandom(100000)
        self.base.write_bytes(data)

        copied = clone_image(self.base, self.output, chunk_size=4096)

        self.assertEqual(copied, len(data))
        self.assertEqual(self.output.read_bytes(), data)

    def test_existing_output_truncated(self):
        self.base.write_bytes(b"short")
        self.output.write_bytes(b"a much longer previous output")

        clone_image(self.base, self.output)

        self.assertEqual(self.output.read_bytes(), b"short")

    def test_progress_callback(self):
        self.base.write_bytes(b"x" * 10000)
        progress = []

        clone_image(self.base, self.output, chunk_size=4096,
                    progress_callback=lambda done, total: progress.append((done, total)))

        self.assertEqual(progress, [(4096, 10000), (8192, 10000), (10000, 10000)])

    def test_missing_base(self):
        with self.assertRaises(OSError):
            clone_image(self.base, self.output)

    def test_block_hashes(self):
        self.base.write_bytes(b"A" * 5000)

        hashes = list(iter_block_hashes(self.base, block_size=4096))

        self.assertEqual(hashes, [mmh3.hash(b"A" * 4096, signed=False), mmh3.hash(b"A" * 904, signed=False)])

    def test_verify_identical(self):
        self.base.write_bytes(b"B" * 9000)
        self.output.write_bytes(b"B" * 9000)

        verify_clone(self.base, self.output)

    def test_verify_detects_changed_block(self):
        data = bytearray(b"B" * 9000)
        self.base.write_bytes(bytes(data))
        data[5000] = ord("C")
        self.output.write_bytes(bytes(data))

        with self.assertRaises(ContainerPatchError) as cm:
            verify_clone(self.base, self.output)

        self.assertIn("4096", str(cm.exception))

    def test_verify_detects_size_mismatch(self):
        self.base.write_bytes(b"B" * 9000)
        self.output.write_bytes(b"B" * 8999)

        with self.assertRaises(ContainerPatchError):
            verify_clone(self.base, self.output)


class TestReadPrimaryArch(unittest.TestCase):
    """Tests for read_primary_arch."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.image = Path(self.temp_dir.name) / "image.sif"

    def tearDown(self):
        """Clean up test fixtures."""
        self.temp_dir.cleanup()

    def test_amd64(self):
        self.image.write_bytes(sif_header(b"02\0"))
        self.assertEqual(read_primary_arch(self.image), 2)

    def test_riscv64(self):
        self.image.write_bytes(sif_header(b"12\0"))
        self.assertEqual(read_primary_arch(self.image), 12)

    def test_not_sif(self):
        self.image.write_bytes(b"\0" * 128)
        with self.assertRaises(ContainerPatchError):
            read_primary_arch(self.image)

    def test_truncated(self):
        self.image.write_bytes(sif_header()[:40])
        with self.assertRaises(ContainerPatchError):
            read_primary_arch(self.image)

    def test_unknown_arch(self):
        self.image.write_bytes(sif_header(b"00\0"))
        with self.assertRaises(ContainerPatchError):
            read_primary_arch(self.image)

    def test_malformed_arch(self):
        self.image.write_bytes(sif_header(b"x1\0"))
        with self.assertRaises(ContainerPatchError):
            read_primary_arch(self.image)


class TestSifPatcher(unittest.TestCase):
    """Tests for the SifPatcher class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_path = Path(self.temp_dir.name)
        self.image = self.temp_path / "image.sif"
        self.image.write_bytes(sif_header(b"04\0") + b"payload")
        self.partition = self.temp_path / "dir.sqfs"
        self.partition.write_bytes(b"squashfs")

    def tearDown(self):
        """Clean up test fixtures."""
        self.temp_dir.cleanup()

    def test_singularity_command(self):
        command = SifPatcher("singularity").add_command("img.sif", "dir.sqfs", 2)

        self.assertEqual(command, [
            "singularity", "sif", "add",
            "--datatype", "4",
            "--parttype", "4",
            "--partfs", "1",
            "--partarch", "2",
            "--groupid", "1",
            "img.sif", "dir.sqfs",
        ])

    def test_siftool_command(self):
        command = SifPatcher("/usr/local/bin/siftool").add_command("img.sif", "dir.sqfs", 2)

        self.assertEqual(command[:2], ["/usr/local/bin/siftool", "add"])
        self.assertEqual(command[-2:], ["img.sif", "dir.sqfs"])

    @patch('dir2sif.subprocess.run')
    def test_append_uses_image_arch(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")

        SifPatcher("apptainer").append_overlay(self.image, self.partition)

        command = mock_run.call_args[0][0]
        self.assertEqual(command[:3], ["apptainer", "sif", "add"])
        self.assertEqual(command[command.index("--partarch") + 1], "4")
        self.assertEqual(command[-2:], [str(self.image), str(self.partition)])

    @patch('dir2sif.subprocess.run')
    def test_tool_failure_surfaced(self, mock_run):
        mock_run.return_value = MagicMock(returncode=255, stdout="", stderr="FATAL: descriptor table full\n")

        with self.assertRaises(ContainerPatchError) as cm:
            SifPatcher().append_overlay(self.image, self.partition)

        self.assertIn("FATAL: descriptor table full", str(cm.exception))
        self.assertIn("255", str(cm.exception))

    @patch('dir2sif.subprocess.run', side_effect=FileNotFoundError(2, "No such file or directory"))
    def test_tool_missing(self, mock_run):
        with self.assertRaises(ContainerPatchError):
            SifPatcher("singularity").append_overlay(self.image, self.partition)

    @patch('dir2sif.subprocess.run')
    def test_not_sif_image(self, mock_run):
        self.image.write_bytes(b"not a container")

        with self.assertRaises(ContainerPatchError):
            SifPatcher().append_overlay(self.image, self.partition)

        mock_run.assert_not_called()

    def test_stub_tool_appends(self):
        """Test with a real program receiving the command line."""
        stub = self.temp_path / "siftool"
        stub.write_text("#!/bin/sh\n" + textwrap.dedent("""\
            for arg; do image=$partition; partition=$arg; done
            cat "$partition" >> "$image"
            """))
        os.chmod(stub, 0o755)
        original = self.image.read_bytes()

        SifPatcher(str(stub)).append_overlay(self.image, self.partition)

        self.assertEqual(self.image.read_bytes(), original + b"squashfs")


if __name__ == '__main__':
    unittest.main()
