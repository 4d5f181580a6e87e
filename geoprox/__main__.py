from geoprox.command import main

main()
