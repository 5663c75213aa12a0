from forward_tester.runner import run

run()
