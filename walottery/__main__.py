from walottery.main import main

main()
