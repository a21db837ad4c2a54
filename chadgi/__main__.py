from chadgi.cli import run

run()
