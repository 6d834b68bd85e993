from draftsync.cli import main

main()
