from groupit_matching.cli import main

main()
