from taskpilot.main import run

run()
