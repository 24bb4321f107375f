"""Run the fleet-sync command line tool."""

from fleet_sync.tool.fleet_sync import main

main()
