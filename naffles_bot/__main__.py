from naffles_bot.bot.client import main

raise SystemExit(main())
