from rootspawn.cli import entrypoint

entrypoint()
