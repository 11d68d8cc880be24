from whalefeed.app import main

main()
