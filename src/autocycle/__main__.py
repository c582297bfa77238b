from autocycle.cli import main

main()
