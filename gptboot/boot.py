"""Fail-safe update preparation for boot-critical partitions on eMMC and UFS."""

from __future__ import annotations

import logging
import os
from typing import Callable, Iterable

from .gpt import GptError, device_block_size, get_state, set_boot_chain, set_state
from .layout import (
    BOOT_DEV_DIR,
    PTN_SWAP_LIST,
    PTN_XBL,
    BootChain,
    BootUpdateStage,
    GptInstance,
    GptState,
    is_ufs_device,
)

log = logging.getLogger(__name__)

BLK_DEV_FILE = "/dev/block/mmcblk0"
SYS_BLOCK_DIR = "/sys/block"
MAX_LUNS = 26
BOOT_LUN_A_ID = 1
BOOT_LUN_B_ID = 2

# Boot-critical LUNs are assumed to be sda..sdz, so the LUN path is the
# fixed-length prefix of a partition path such as /dev/block/sda12.
_PATH_TRUNCATE_LOC = len("/dev/block/sda")
_LUN_NAME_START_LOC = len("/dev/block/")
_DEFAULT_BLOCK_SIZE = 512
_BAK_SUFFIX = "bak"

BootLunSetter = Callable[[str, int], object]


def _readlink(path: str) -> str:
    try:
        return os.readlink(path)
    except OSError as exc:
        raise GptError(f"failed to resolve link for {path}: {exc}") from exc


def _xbl_paths(by_name_dir: str) -> tuple[str, str, str, str]:
    return (
        os.path.join(by_name_dir, PTN_XBL),
        os.path.join(by_name_dir, PTN_XBL + _BAK_SUFFIX),
        os.path.join(by_name_dir, PTN_XBL + "_a"),
        os.path.join(by_name_dir, PTN_XBL + "_b"),
    )


def _has_legacy_xbl(by_name_dir: str) -> bool:
    primary, backup, _, _ = _xbl_paths(by_name_dir)
    return os.path.lexists(primary) and os.path.lexists(backup)


def resolve_dev_path(
    partname: str, is_ufs: bool = False, by_name_dir: str = BOOT_DEV_DIR
) -> str:
    """Return the block device holding the GPT that lists ``partname``.

    On eMMC this is always the main device; on UFS it is the LUN the
    by-name link of the partition points into.
    """
    if not partname:
        raise GptError("invalid partition name")
    if not is_ufs:
        return BLK_DEV_FILE
    link = os.path.join(by_name_dir, partname)
    if not os.path.lexists(link):
        raise GptError(f"partition {partname!r} not found in {by_name_dir}")
    return _readlink(link)[:_PATH_TRUNCATE_LOC]


def partition_map(
    partitions: Iterable[str], is_ufs: bool = False, by_name_dir: str = BOOT_DEV_DIR
) -> dict[str, list[str]]:
    """Group partition names by the block device whose GPT holds them.

    Partitions that cannot be located are left out.
    """
    names = list(partitions)
    if not names:
        raise GptError("invalid partition list")
    grouped: dict[str, list[str]] = {}
    for name in names:
        try:
            device = resolve_dev_path(name, is_ufs, by_name_dir)
        except GptError:
            continue
        grouped.setdefault(device, []).append(name)
    return grouped


def add_lun_to_update_list(lun_path: str, luns: list[str]) -> bool:
    """Append ``lun_path`` to ``luns`` unless already covered.

    Returns ``True`` when the path was added.
    """
    if not lun_path:
        raise GptError("invalid LUN path")
    if not os.path.exists(lun_path):
        raise GptError(f"unable to access {lun_path}")
    if any(lun_path.startswith(existing) for existing in luns):
        return False
    if len(luns) >= MAX_LUNS:
        raise GptError(f"LUN list already holds {MAX_LUNS} entries")
    log.debug("adding %s to the LUN list at index %d", lun_path, len(luns))
    luns.append(lun_path)
    return True


def scsi_node_from_bootdevice(
    bootdev_path: str, sys_block_dir: str = SYS_BLOCK_DIR
) -> str:
    """Find the SCSI generic node (``/dev/sgN``) of the LUN behind a by-name link."""
    if not bootdev_path:
        raise GptError("invalid boot device path")
    real_path = _readlink(bootdev_path)
    if len(real_path) < _PATH_TRUNCATE_LOC + 1:
        raise GptError(f"unrecognized path: {real_path}")
    lun_name = real_path[:_PATH_TRUNCATE_LOC][_LUN_NAME_START_LOC:]
    if not lun_name:
        raise GptError(f"unrecognized truncated path: {real_path}")
    sg_dir = os.path.join(sys_block_dir, lun_name, "device", "scsi_generic")
    try:
        entries = sorted(os.listdir(sg_dir))
    except OSError as exc:
        raise GptError(f"failed to open {sg_dir}: {exc}") from exc
    for entry in entries:
        if entry.startswith("."):
            continue
        if entry.startswith("sg"):
            node = f"/dev/{entry}"
            log.debug("scsi generic node is %s", node)
            return node
    raise GptError(f"unable to locate scsi generic node in {sg_dir}")


def set_xbl_boot_partition(
    chain: BootChain,
    set_boot_lun: BootLunSetter | None = None,
    by_name_dir: str = BOOT_DEV_DIR,
    sys_block_dir: str = SYS_BLOCK_DIR,
) -> str:
    """Make the UFS device boot from the primary or the backup boot LUN.

    ``set_boot_lun(sg_node, lun_id)`` performs the device query that selects
    the boot LUN. Returns the SCSI generic node that was addressed.
    """
    try:
        chain = BootChain(chain)
    except ValueError as exc:
        raise GptError(f"invalid boot chain id: {chain!r}") from exc
    primary, backup, ab_primary, ab_secondary = _xbl_paths(by_name_dir)
    if chain == BootChain.BACKUP_BOOT:
        lun_id = BOOT_LUN_B_ID
        candidates = (backup, ab_secondary)
    else:
        lun_id = BOOT_LUN_A_ID
        candidates = (primary, ab_primary)
    boot_dev = next((p for p in candidates if os.path.lexists(p)), None)
    if boot_dev is None:
        which = "secondary" if chain == BootChain.BACKUP_BOOT else "primary"
        raise GptError(f"failed to locate {which} xbl")

    legacy = os.path.lexists(primary) and os.path.lexists(backup)
    ab = os.path.lexists(ab_primary) and os.path.lexists(ab_secondary)
    if not (legacy or ab):
        raise GptError("primary/secondary xbl partitions not found")
    if set_boot_lun is None:
        raise GptError("no way to set the boot LUN was given")

    log.info("setting %s lun as boot lun", boot_dev)
    node = scsi_node_from_bootdevice(boot_dev, sys_block_dir)
    try:
        set_boot_lun(node, lun_id)
    except OSError as exc:
        raise GptError(f"failed to set boot LUN through {node}: {exc}") from exc
    return node


def _internal_stage(primary: GptState, secondary: GptState) -> BootUpdateStage:
    if GptState.GPT_BAD_CRC in (primary, secondary):
        raise GptError("GPT headers CRC corruption detected, aborting")
    if primary == GptState.GPT_BAD_SIGNATURE and secondary == GptState.GPT_BAD_SIGNATURE:
        raise GptError("both GPT headers corrupted, aborting")
    if primary == GptState.GPT_OK and secondary == GptState.GPT_OK:
        return BootUpdateStage.UPDATE_MAIN
    if primary == GptState.GPT_BAD_SIGNATURE:
        return BootUpdateStage.UPDATE_BACKUP
    return BootUpdateStage.UPDATE_FINALIZE


def prepare_partitions(
    stage: BootUpdateStage,
    dev_path: str,
    is_ufs: bool = False,
    set_boot_lun: BootLunSetter | None = None,
    by_name_dir: str = BOOT_DEV_DIR,
) -> bool:
    """Move the GPTs of one device into position for the given update stage.

    Returns ``True`` when the disk was changed, ``False`` when it was already
    prepared for ``stage`` or has no backup partitions to switch to.
    """
    try:
        stage = BootUpdateStage(stage)
    except ValueError as exc:
        raise GptError(f"invalid update stage: {stage!r}") from exc
    if not dev_path:
        raise GptError("invalid dev_path")
    try:
        f = open(dev_path, "r+b")
    except OSError as exc:
        raise GptError(f"opening {dev_path!r} failed: {exc}") from exc

    with f:
        try:
            return _prepare_open_device(f, stage, is_ufs, set_boot_lun, by_name_dir)
        finally:
            try:
                f.flush()
                os.fsync(f.fileno())
            except OSError:
                pass


def _prepare_open_device(f, stage, is_ufs, set_boot_lun, by_name_dir) -> bool:
    block_size = device_block_size(f, _DEFAULT_BLOCK_SIZE)
    primary = get_state(f, GptInstance.PRIMARY_GPT, block_size)
    secondary = get_state(f, GptInstance.SECONDARY_GPT, block_size)
    internal = _internal_stage(primary, secondary)

    if int(stage) == int(internal) - 1:
        return False
    if stage != internal:
        raise GptError(f"unexpected stage {stage.name}, disk is ready for {internal.name}")

    if stage == BootUpdateStage.UPDATE_MAIN:
        if is_ufs:
            if _has_legacy_xbl(by_name_dir):
                set_xbl_boot_partition(BootChain.BACKUP_BOOT, set_boot_lun, by_name_dir)
            else:
                log.info("xbl partition not found, assuming sbl in use")
        log.info("preparing for primary partition update")
        if not set_boot_chain(f, BootChain.BACKUP_BOOT, block_size, is_ufs):
            return False
        set_state(f, GptInstance.PRIMARY_GPT, GptState.GPT_BAD_SIGNATURE, block_size)
    elif stage == BootUpdateStage.UPDATE_BACKUP:
        if is_ufs:
            if _has_legacy_xbl(by_name_dir):
                set_xbl_boot_partition(BootChain.NORMAL_BOOT, set_boot_lun, by_name_dir)
            else:
                log.info("xbl partition not found, assuming sbl in use")
        log.info("preparing for backup partition update")
        set_state(f, GptInstance.PRIMARY_GPT, GptState.GPT_OK, block_size)
        set_state(f, GptInstance.SECONDARY_GPT, GptState.GPT_BAD_SIGNATURE, block_size)
    else:
        log.info("finalizing partitions")
        set_boot_chain(f, BootChain.NORMAL_BOOT, block_size, is_ufs)
        set_state(f, GptInstance.SECONDARY_GPT, GptState.GPT_OK, block_size)
    return True


def _ufs_update_luns(by_name_dir: str) -> list[str]:
    luns: list[str] = []
    for name in PTN_SWAP_LIST:
        # XBL on UFS is switched through the boot LUN, not the GPT.
        if name.startswith(PTN_XBL):
            continue
        link = os.path.join(by_name_dir, name + _BAK_SUFFIX)
        if not os.path.lexists(link):
            continue
        try:
            real_path = os.readlink(link)
        except OSError as exc:
            log.warning("readlink of %s failed, skipping: %s", link, exc)
            continue
        if len(real_path) < _PATH_TRUNCATE_LOC + 1:
            log.warning("unknown path %s, skipping", real_path)
            continue
        try:
            add_lun_to_update_list(real_path[:_PATH_TRUNCATE_LOC], luns)
        except GptError as exc:
            log.warning("%s", exc)
    return luns


def prepare_boot_update(
    stage: BootUpdateStage,
    bootdevice: str | None = "N/A",
    set_boot_lun: BootLunSetter | None = None,
    by_name_dir: str = BOOT_DEV_DIR,
) -> list[str]:
    """Prepare every device holding boot-critical partitions for ``stage``.

    ``bootdevice`` is the ``ro.boot.bootdevice`` value that tells eMMC from
    UFS. Returns the devices that were handled; on UFS every LUN is tried and
    a :class:`GptError` naming the failed ones is raised afterwards.
    """
    is_ufs = is_ufs_device(bootdevice)
    if not is_ufs:
        prepare_partitions(stage, BLK_DEV_FILE, False, set_boot_lun, by_name_dir)
        return [BLK_DEV_FILE]

    log.info("running on a UFS device")
    luns = _ufs_update_luns(by_name_dir)
    failed: list[str] = []
    for lun in luns:
        log.info("preparing %s for update stage %s", lun, stage)
        try:
            prepare_partitions(stage, lun, True, set_boot_lun, by_name_dir)
        except GptError as exc:
            log.error("failed to prepare %s: %s", lun, exc)
            failed.append(lun)
    if failed:
        raise GptError(f"failed to prepare {', '.join(failed)}")
    return luns