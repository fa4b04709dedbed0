from coremesh.cmd.cli import app

app(prog_name="coremesh")
