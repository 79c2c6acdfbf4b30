"""GPT on-disk layout, A/B attributes and the enumerations used for boot updates."""

from __future__ import annotations

from enum import IntEnum

# GPT header fields
GPT_SIGNATURE = b"EFI PART"
HEADER_SIZE_OFFSET = 12
HEADER_CRC_OFFSET = 16
PRIMARY_HEADER_OFFSET = 24
BACKUP_HEADER_OFFSET = 32
FIRST_USABLE_LBA_OFFSET = 40
LAST_USABLE_LBA_OFFSET = 48
PENTRIES_OFFSET = 72
PARTITION_COUNT_OFFSET = 80
PENTRY_SIZE_OFFSET = 84
PARTITION_CRC_OFFSET = 88

# Partition entry fields
TYPE_GUID_OFFSET = 0
TYPE_GUID_SIZE = 16
PTN_ENTRY_SIZE = 128
UNIQUE_GUID_OFFSET = 16
FIRST_LBA_OFFSET = 32
LAST_LBA_OFFSET = 40
ATTRIBUTE_FLAG_OFFSET = 48
PARTITION_NAME_OFFSET = 56
MAX_GPT_NAME_SIZE = 72

# A/B attributes live from bit 48 of the attribute field onwards.
AB_FLAG_OFFSET = ATTRIBUTE_FLAG_OFFSET + 6
GPT_DISK_INIT_MAGIC = 0xABCD
AB_PARTITION_ATTR_SLOT_ACTIVE = 0x1 << 2
AB_PARTITION_ATTR_BOOT_SUCCESSFUL = 0x1 << 6
AB_PARTITION_ATTR_UNBOOTABLE = 0x1 << 7
AB_SLOT_ACTIVE_VAL = 0x3F
AB_SLOT_INACTIVE_VAL = 0x0
AB_SLOT_ACTIVE = 1
AB_SLOT_INACTIVE = 0
AB_SLOT_A_SUFFIX = "_a"
AB_SLOT_B_SUFFIX = "_b"

PTN_XBL = "xbl"
PTN_XBL_CFG = "xbl_config"
PTN_SWAP_LIST: tuple[str, ...] = (
    PTN_XBL, PTN_XBL_CFG, "sbl1", "rpm", "tz", "aboot", "abl", "hyp",
    "lksecapp", "keymaster", "cmnlib", "cmnlib32", "cmnlib64", "pmic",
    "apdp", "devcfg", "hosd", "keystore", "msadp", "mdtp", "mdtpsecapp",
    "dsp", "aop", "qupfw", "vbmeta", "dtbo", "ImageFv",
)
AB_PTN_LIST: tuple[str, ...] = PTN_SWAP_LIST + (
    "boot", "system", "vendor", "modem", "bluetooth",
)
BOOT_DEV_DIR = "/dev/block/bootdevice/by-name"

_UFS_SUFFIX = ".ufshc"


class BootUpdateStage(IntEnum):
    """Stage of a fail-safe boot partition update."""

    UPDATE_MAIN = 1
    UPDATE_BACKUP = 2
    UPDATE_FINALIZE = 3


class GptInstance(IntEnum):
    """Which of the two GPT copies is meant."""

    PRIMARY_GPT = 0
    SECONDARY_GPT = 1


class BootChain(IntEnum):
    """Which set of boot-critical partitions the device boots from."""

    NORMAL_BOOT = 0
    BACKUP_BOOT = 1


class GptState(IntEnum):
    """Health of a GPT header."""

    GPT_OK = 0
    GPT_BAD_SIGNATURE = 1
    GPT_BAD_CRC = 2


def is_ufs_device(bootdevice: str | None = "N/A") -> bool:
    """Tell whether a ``ro.boot.bootdevice`` value names a UFS host controller.

    The value must end in ``.ufshc`` and have at least one character before it.
    """
    if bootdevice is None:
        bootdevice = "N/A"
    if len(bootdevice) < len(_UFS_SUFFIX) + 1:
        return False
    return bootdevice.endswith(_UFS_SUFFIX)