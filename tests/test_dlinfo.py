"""Tests for the dlinfo.fex flash plan parser."""

import pytest

from fel_flasher.errors import CorruptImage
from fel_flasher.image.container import ImageContainer
from fel_flasher.image.dlinfo import DownloadInfo, load_flash_plan

PLAN = [
    ("boot", 0x8000, 0x8000, "BOOT_FEX00000000", "VBOOT_FEX0000000"),
    ("system", 0x10000, 0x100000, "SYSTEM_FEX000000", "VSYSTEM_FEX00000"),
    ("big", 0x1_0000_0000, 0x2_0000_0000, "BIG_FEX000000000", ""),
]


class TestDownloadInfo:
    """Test both dlinfo layouts."""

    def test_softw411(self, make_dlinfo):
        info = DownloadInfo.parse(make_dlinfo(PLAN))
        assert info.magic == "softw411"
        assert info.crc_ok
        assert len(info) == 3
        boot = info.entries[0]
        assert boot.name == "boot"
        assert boot.address == 0x8000
        assert boot.length == 0x8000
        assert boot.filename == "BOOT_FEX00000000"
        assert boot.verify_filename == "VBOOT_FEX0000000"
        assert boot.verify == 1

    def test_64bit_fields(self, make_dlinfo):
        big = DownloadInfo.parse(make_dlinfo(PLAN)).entries[2]
        assert big.address == 0x1_0000_0000
        assert big.length == 0x2_0000_0000
        assert big.verify_filename == ""

    def test_softw311(self, make_dlinfo):
        info = DownloadInfo.parse(make_dlinfo(PLAN[:2], magic=b"softw311"))
        assert info.magic == "softw311"
        assert info.crc_ok
        assert [e.name for e in info] == ["boot", "system"]
        assert info.entries[1].filename == "SYSTEM_FEX000000"
        assert all(e.verify == 1 for e in info)

    def test_item_count_limits_entries(self, make_dlinfo):
        raw = bytearray(make_dlinfo(PLAN))
        raw[16] = 1
        info = DownloadInfo.parse(bytes(raw))
        assert [e.name for e in info] == ["boot"]

    def test_crc_mismatch_is_reported(self, make_dlinfo, caplog):
        raw = bytearray(make_dlinfo(PLAN))
        raw[-1] ^= 0xFF
        with caplog.at_level("WARNING"):
            info = DownloadInfo.parse(bytes(raw))
        assert not info.crc_ok
        assert len(info) == 3
        assert "CRC mismatch" in caplog.text

    def test_unknown_magic(self, make_dlinfo):
        raw = bytearray(make_dlinfo(PLAN))
        raw[8:16] = b"softw999"
        with pytest.raises(CorruptImage, match="magic"):
            DownloadInfo.parse(bytes(raw))

    def test_truncated(self, make_dlinfo):
        with pytest.raises(CorruptImage, match="truncated"):
            DownloadInfo.parse(make_dlinfo(PLAN)[:1000])
        with pytest.raises(CorruptImage):
            DownloadInfo.parse(b"\x00" * 8)


class TestLoadFlashPlan:
    """Test reading the plan out of an image."""

    def test_from_image(self, make_image, make_dlinfo):
        path = make_image([("12345678", "DLINFO_FEX000000", "dlinfo.fex", make_dlinfo(PLAN))])
        plan = load_flash_plan(ImageContainer.open(path))
        assert [e.name for e in plan] == ["boot", "system", "big"]

    def test_missing(self, make_image):
        path = make_image([("COMMON", "SYS_CONFIG100000", "sys_config.fex", b"x")])
        with pytest.raises(CorruptImage, match="dlinfo"):
            load_flash_plan(ImageContainer.open(path))
