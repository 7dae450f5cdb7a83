from misaka.cli import main

main()
