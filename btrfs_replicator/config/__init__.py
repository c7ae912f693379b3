"""Runtime configuration for btrfs-replicator."""
