from extensionmanager.cli.main import main

main()
