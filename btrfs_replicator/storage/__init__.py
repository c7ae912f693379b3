"""Storage layer: external btrfs, mount and fstab collaborators."""
