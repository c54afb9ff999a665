from .bootstrap.main import run

run()
