from ares_bridge.main import run

run()
