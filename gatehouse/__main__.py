from gatehouse.app import main

main()
