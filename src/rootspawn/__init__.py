"""rootspawn: run commands in a chroot, nspawn container or docker image with
the user's session bridged in."""

__version__ = "0.1.0"
