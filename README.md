# gptboot

Failsafe updates of boot-critical partitions on GPT disks.

A disk carrying boot-critical images (`xbl`, `tz`, `rpm`, `abl`, ...) can hold
a backup copy of each one (`tzbak`, `rpmbak`, ...). `gptboot` uses the primary
and secondary GPT headers to move a device through three update stages, so
that there is always a bootable chain:

1. `UPDATE_MAIN`: the secondary GPT's entry array is rebuilt from the
   primary one with every boot-critical entry swapped with its `bak` twin,
   and the primary header's signature is cleared. The device now boots from
   the backups while the primary images are updated.
2. `UPDATE_BACKUP`: the primary header's signature is restored and the
   secondary header's is cleared, so the backups can be updated.
3. `UPDATE_FINALIZE`: the secondary GPT is rebuilt from the primary without
   swapping, and its header's signature is restored.

Every header that is rewritten gets a fresh CRC. The current stage of a disk
is worked out from the state of its two headers; asking for the stage the
disk has already been prepared for does nothing.

On UFS devices the `xbl` image sits on a dedicated boot LUN. Its entries are
not swapped in the GPT; instead the boot LUN is switched through a callback
that the caller supplies.

## Installation

```
pip install gptboot
```

There are no third-party dependencies.

## Modules

- `gptboot.crc`: `sparse_crc32(crc, data)` continues a CRC-32 from `crc`
  over `data`; starting from `0` gives the standard CRC-32 used by GPT.
- `gptboot.layout`: header and entry offsets, `PTN_SWAP_LIST`, `AB_PTN_LIST`,
  the A/B attribute constants, the enums `BootUpdateStage`, `GptInstance`,
  `BootChain` and `GptState`, and `is_ufs_device(bootdevice)`, which tells
  whether a `ro.boot.bootdevice` value ends in `.ufshc`.
- `gptboot.gpt`: operations on an open device or image file. `get_state`,
  `set_state`, `set_boot_chain`, `pentry_seek`, `boot_chain_swap` and
  `device_block_size`. Failures raise `GptError`. Where `block_size` is
  omitted it is asked of the block device, which fails on ordinary files,
  so pass it explicitly for images.
- `gptboot.disk`: `read_header`, `write_header`, `read_pentry_array`,
  `write_pentry_array`, and `GptDisk`, an in-memory copy of both headers and
  both entry arrays with `load`, `get_pentry`, `set_pentry`, `update_crc` and
  `commit`.
- `gptboot.boot`: the update workflow. `prepare_partitions` (one device),
  `prepare_boot_update` (every device holding boot-critical partitions),
  `resolve_dev_path`, `partition_map`, `add_lun_to_update_list`,
  `scsi_node_from_bootdevice` and `set_xbl_boot_partition`.

## Examples

Inspecting and switching the state of a disk image:

```python
from gptboot.gpt import get_state, set_boot_chain
from gptboot.layout import BootChain, GptInstance

with open("disk.img", "r+b") as f:
    print(get_state(f, GptInstance.PRIMARY_GPT, 512))
    changed = set_boot_chain(f, BootChain.BACKUP_BOOT, 512, False)
    # changed is False when the disk has no backup partitions
```

Editing a partition entry and writing both tables back:

```python
from gptboot.disk import GptDisk
from gptboot.layout import GptInstance

disk = GptDisk.load("disk.img", 512)
entry = bytearray(disk.get_pentry("boot_a", GptInstance.PRIMARY_GPT))
# ... modify the entry; its length must stay disk.pentry_size ...
disk.set_pentry("boot_a", GptInstance.PRIMARY_GPT, entry)
disk.update_crc()
disk.commit()
```

`get_pentry` returns `None` when the partition is missing; a lookup for
`name` also matches an entry called `name` + `bak`.

Running one stage of a failsafe update on an eMMC image:

```python
from gptboot.boot import prepare_partitions
from gptboot.layout import BootUpdateStage

changed = prepare_partitions(BootUpdateStage.UPDATE_MAIN, "disk.img")
```

`prepare_partitions` returns `True` when the disk was changed and `False`
when it was already prepared for that stage or had nothing to swap. It raises
`GptError` on a header CRC error, when both headers are corrupt, or when the
stage asked for does not follow from the disk's state.

Grouping partitions by the device that holds them:

```python
from gptboot.boot import partition_map

partition_map(["boot_a", "system_a"], is_ufs=True)
# {"/dev/block/sda": ["boot_a"], "/dev/block/sdb": ["system_a"]}
```

## What it does not do

- It does not read system properties. `prepare_boot_update` takes the
  `ro.boot.bootdevice` value as its `bootdevice` argument.
- It does not talk to the UFS controller. Switching the boot LUN is done by
  the `set_boot_lun(sg_node, lun_id)` callable handed to
  `set_xbl_boot_partition`, `prepare_partitions` and `prepare_boot_update`;
  without one, switching on a UFS device raises `GptError`.
- It has no command-line tool; it is used as a library.

## Running the tests

```
pip install gptboot[test]
pytest
```