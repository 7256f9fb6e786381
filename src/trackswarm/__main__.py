from trackswarm.cli import main

main()
