from browser_netcap.cli import main

main()
